from __future__ import annotations

import unittest

from fb_posts.retry import RetryConfig, RetryEvent, backoff_seconds, call_with_retries_async


def _always_retryable(exc: BaseException) -> tuple[bool, float | None, str | None]:
    return True, None, "test"


def _never_retryable(exc: BaseException) -> tuple[bool, float | None, str | None]:
    return False, None, None


class TestBackoff(unittest.TestCase):
    def test_exponential_and_capped(self) -> None:
        cfg = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_ratio=0.0)
        self.assertEqual(
            [backoff_seconds(n, cfg) for n in range(1, 6)],
            [1.0, 2.0, 4.0, 5.0, 5.0],
        )
        self.assertEqual(backoff_seconds(10_000, cfg), 5.0)

    def test_retry_after_overrides_and_is_capped(self) -> None:
        cfg = RetryConfig(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_ratio=0.0, retry_after_cap_seconds=30.0)
        self.assertEqual(backoff_seconds(1, cfg, retry_after=12.0), 12.0)
        self.assertEqual(backoff_seconds(1, cfg, retry_after=120.0), 30.0)
        self.assertEqual(backoff_seconds(1, cfg, retry_after=-1.0), 1.0)

    def test_jitter_stays_in_range(self) -> None:
        cfg = RetryConfig(base_delay_seconds=2.0, max_delay_seconds=2.0, jitter_ratio=0.25)
        for _ in range(50):
            d = backoff_seconds(1, cfg)
            self.assertGreaterEqual(d, 1.5)
            self.assertLessEqual(d, 2.5)

    def test_invalid_config(self) -> None:
        with self.assertRaises(ValueError):
            RetryConfig(max_attempts=0)
        with self.assertRaises(ValueError):
            RetryConfig(base_delay_seconds=5.0, max_delay_seconds=1.0)
        with self.assertRaises(ValueError):
            RetryConfig(jitter_ratio=1.5)


class TestCallWithRetriesAsync(unittest.IsolatedAsyncioTestCase):
    async def test_retries_until_success(self) -> None:
        calls = {"n": 0}
        sleeps: list[float] = []
        events: list[RetryEvent] = []

        async def fn() -> str:
            calls["n"] += 1
            if calls["n"] < 3:
                raise RuntimeError("flaky")
            return "ok"

        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)

        cfg = RetryConfig(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=10.0, jitter_ratio=0.0)
        out = await call_with_retries_async(
            fn,
            cfg=cfg,
            is_retryable=_always_retryable,
            operation="test.op",
            on_retry=events.append,
            sleep_fn=sleep,
            context_url="https://x",
        )

        self.assertEqual(out, "ok")
        self.assertEqual(calls["n"], 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual([e.failure_attempt for e in events], [1, 2])
        self.assertEqual(events[0].operation, "test.op")
        self.assertEqual(events[0].error_message, "flaky")
        self.assertEqual(events[0].context_url, "https://x")

    async def test_non_retryable_raises_immediately(self) -> None:
        calls = {"n": 0}

        async def fn() -> None:
            calls["n"] += 1
            raise ValueError("bad input")

        with self.assertRaises(ValueError):
            await call_with_retries_async(
                fn,
                cfg=RetryConfig(max_attempts=5),
                is_retryable=_never_retryable,
                operation="test.op",
            )
        self.assertEqual(calls["n"], 1)

    async def test_gives_up_after_max_attempts(self) -> None:
        calls = {"n": 0}

        async def fn() -> None:
            calls["n"] += 1
            raise RuntimeError("still broken")

        async def sleep(seconds: float) -> None:
            return None

        with self.assertRaises(RuntimeError):
            await call_with_retries_async(
                fn,
                cfg=RetryConfig(max_attempts=3, jitter_ratio=0.0),
                is_retryable=_always_retryable,
                operation="test.op",
                sleep_fn=sleep,
            )
        self.assertEqual(calls["n"], 3)


if __name__ == "__main__":
    unittest.main()
