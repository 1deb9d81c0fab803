from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fb_posts.config_schema import AppConfig
from fb_posts.export_excel import export_dataset_workbook
from fb_posts.models import LinkRef, PostRecord, PostStats, VideoRef
from fb_posts.storage import SQLiteStateStore

_POST = "https://www.facebook.com/someone/posts/1"


def _records() -> dict[str, PostRecord]:
    return {
        "someone": PostRecord(
            name="Some One",
            post_url=_POST,
            post_text="=SUM(A1:A2)",
            post_links=[
                LinkRef(url="https://example.com/a", domain="example.com", title="A"),
                LinkRef(url="https://example.com/b", domain="example.com"),
            ],
            post_videos=[VideoRef(post_url="https://m.facebook.com/someone/videos/9/", video_url="https://cdn/v.mp4")],
            post_stats=PostStats(reactions=4, shares=1, comments=2, reactions_breakdown={"like": 4}),
        ),
        "other": PostRecord(
            post_url="https://www.facebook.com/other/posts/2",
            pending_video_url="https://m.facebook.com/other/videos/3/",
        ),
    }


class TestExportExcel(unittest.TestCase):
    def test_exports_required_sheets(self) -> None:
        try:
            from openpyxl import load_workbook  # type: ignore[import-not-found]
        except Exception as e:  # pragma: no cover
            raise AssertionError("openpyxl is required for this test") from e

        cfg = AppConfig(start_urls=[_POST])

        with tempfile.TemporaryDirectory() as td:
            out_path = Path(td) / "dataset.xlsx"

            with SQLiteStateStore.open(":memory:") as store:
                store.create_run(
                    config_hash="hash1",
                    versions={"python": "3.x"},
                    run_id="run_test",
                    started_at="2025-12-01T00:00:00+00:00",
                )
                store.record_failed_request(
                    run_id="run_test",
                    url="https://www.facebook.com/third/posts/3",
                    label="POST",
                    retry_count=10,
                    errors=["ClassifiedError: Desktop captcha found"],
                    namespace="captcha",
                )

                export_dataset_workbook(cfg, store, _records(), out_path, run_id="run_test")

            self.assertTrue(out_path.exists())

            wb = load_workbook(out_path, read_only=False)
            self.assertEqual(wb.sheetnames, ["posts", "links", "failed_requests", "run_metadata"])

            posts = wb["posts"]
            self.assertEqual(posts.freeze_panes, "A2")
            header = [c.value for c in posts[1]]
            self.assertIn("video_url", header)
            self.assertIn("pending_video_url", header)
            self.assertEqual(posts.max_row, 3)

            text_col = header.index("post_text") + 1
            self.assertEqual(posts.cell(row=2, column=text_col).value, "'=SUM(A1:A2)")

            self.assertEqual(wb["links"].max_row, 3)

            failed = wb["failed_requests"]
            failed_header = [c.value for c in failed[1]]
            ns_col = failed_header.index("namespace") + 1
            self.assertEqual(failed.cell(row=2, column=ns_col).value, "captcha")

            meta = wb["run_metadata"]
            keys = [meta.cell(row=r, column=1).value for r in range(1, meta.max_row + 1)]
            self.assertIn("run_id", keys)
            self.assertIn("counts.pending_videos", keys)
            self.assertIn("domain", keys)

    def test_exports_with_no_records(self) -> None:
        cfg = AppConfig(start_urls=[_POST])
        with tempfile.TemporaryDirectory() as td:
            out_path = Path(td) / "sub" / "dataset.xlsx"
            with SQLiteStateStore.open(":memory:") as store:
                store.create_run(config_hash="hash1", run_id="run_empty")
                written = export_dataset_workbook(cfg, store, {}, out_path, run_id="run_empty")
            self.assertEqual(written, out_path)
            self.assertTrue(out_path.exists())


if __name__ == "__main__":
    unittest.main()
