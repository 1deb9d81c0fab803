from __future__ import annotations

import unittest

from fb_posts.failure_report import build_failure_report, format_failure_report
from fb_posts.storage import FailedRequestRecord


def _failed(namespace: str | None, *, label: str = "POST", n: int = 1) -> FailedRequestRecord:
    return FailedRequestRecord(
        run_id="run_a",
        url=f"https://www.facebook.com/someone{n}/posts/1",
        label=label,
        author_id=f"someone{n}",
        namespace=namespace,
        retry_count=10,
        errors=["ClassifiedError: blocked"],
        failed_at="2025-01-01T00:00:00+00:00",
    )


class TestFailureReport(unittest.TestCase):
    def test_ok_when_nothing_failed(self) -> None:
        report = build_failure_report([], handled=5, records=5)
        self.assertEqual(report["severity"], "ok")
        self.assertEqual(report["recommendations"], [])
        self.assertIn("5 handled", report["summary"])

    def test_blocked_failures_are_info(self) -> None:
        report = build_failure_report(
            [_failed("captcha", n=1), _failed("captcha", n=2), _failed("login", label="VIDEO", n=3)],
            handled=3,
            records=1,
        )
        self.assertEqual(report["severity"], "info")
        self.assertEqual(report["details"]["by_namespace"], {"captcha": 2, "login": 1})
        self.assertEqual(report["details"]["by_label"], {"POST": 2, "VIDEO": 1})
        self.assertTrue(any("RESIDENTIAL" in r for r in report["recommendations"]))

    def test_unclassified_failures_are_errors(self) -> None:
        report = build_failure_report(
            [_failed(None, n=1), _failed("internal", n=2)],
            handled=0,
            records=0,
            pending_videos=2,
        )
        self.assertEqual(report["severity"], "error")
        self.assertEqual(report["details"]["by_namespace"], {"internal": 1, "unclassified": 1})
        self.assertEqual(report["details"]["pending_videos"], 2)
        self.assertTrue(any("pending video" in r for r in report["recommendations"]))

    def test_format(self) -> None:
        report = build_failure_report([_failed("captcha")], handled=1, records=0)
        text = format_failure_report(report)
        self.assertIn("Failures by namespace:", text)
        self.assertIn("- captcha: 1", text)
        self.assertIn("Recommendations:", text)

        self.assertEqual(format_failure_report({}), "Run finished (unknown).")


if __name__ == "__main__":
    unittest.main()
