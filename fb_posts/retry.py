from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

# 2**32 is already far past any sane max_delay_seconds.
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff policy shared by request retries and Apify calls.

    `max_attempts` includes the first try. The n-th failure waits
    `base_delay_seconds * 2**(n-1)`, capped at `max_delay_seconds`, then scaled by a random
    factor in [1 - jitter_ratio, 1 + jitter_ratio]. A server Retry-After hint raises the
    wait, bounded by `retry_after_cap_seconds` (0 = unbounded).
    """

    max_attempts: int = 6
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 20.0
    jitter_ratio: float = 0.25
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        problems: list[str] = []
        if self.max_attempts < 1:
            problems.append("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            problems.append("delays must be >= 0")
        elif self.max_delay_seconds < self.base_delay_seconds:
            problems.append("max_delay_seconds must be >= base_delay_seconds")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            problems.append("jitter_ratio must be within [0, 1]")
        if self.retry_after_cap_seconds < 0:
            problems.append("retry_after_cap_seconds must be >= 0")
        if problems:
            raise ValueError("; ".join(problems))

    def retry_after(self, hint: float | None) -> float | None:
        if hint is None:
            return None
        try:
            seconds = float(hint)
        except (TypeError, ValueError):
            return None
        if seconds < 0:
            return None
        if self.retry_after_cap_seconds > 0:
            return min(seconds, float(self.retry_after_cap_seconds))
        return seconds

    def delay_for(self, failure_attempt: int, *, retry_after: float | None = None) -> float:
        exponent = min(max(int(failure_attempt) - 1, 0), _MAX_EXPONENT)
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2**exponent))

        hint = self.retry_after(retry_after)
        if hint is not None and hint > delay:
            delay = hint

        if delay <= 0:
            return 0.0
        if self.jitter_ratio > 0:
            delay *= random.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(0.0, delay)


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str

    context_url: str | None


IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
AsyncSleepFn = Callable[[float], Awaitable[None]]


def backoff_seconds(
    failure_attempt: int,
    cfg: RetryConfig,
    *,
    retry_after: float | None = None,
) -> float:
    return cfg.delay_for(failure_attempt, retry_after=retry_after)


async def call_with_retries_async(
    fn: Callable[[], Awaitable[T]],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: AsyncSleepFn | None = None,
    context_url: str | None = None,
) -> T:
    """
    Await `fn()` until it succeeds, fails with a non-retryable error, or attempts run out.

    `is_retryable(exc)` answers (retry?, retry_after_seconds, reason). The last error is
    re-raised unchanged. Cancellation is never retried.
    """
    op = (operation or "").strip() or "operation"
    sleep = sleep_fn or asyncio.sleep
    attempt = 0

    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            retry, hint, reason = is_retryable(exc)
            if not retry or attempt >= cfg.max_attempts:
                raise

            delay = cfg.delay_for(attempt, retry_after=hint)
            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=attempt,
                        next_attempt=attempt + 1,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        retry_after_seconds=cfg.retry_after(hint),
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                        context_url=context_url,
                    )
                )

        if delay > 0:
            await sleep(delay)
