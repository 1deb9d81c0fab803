from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import markers
from .aggregation import AggregationStore
from .config_schema import AppConfig
from .engine import RequestTask
from .errors import BlockNamespace, ClassifiedError, classify_failure
from .extract import extract_post_record
from .models import PostRecord, RequestLabel, VideoRef, merge_post_result, merge_video_result
from .run_log import RunLogger
from .video import acquire_video_url


class RequestPhase(str, Enum):
    DEQUEUED = "dequeued"
    BLOCK_CHECK = "block_check"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    ENQUEUE_FOLLOW_UP = "enqueue_follow_up"
    DONE = "done"
    FAILED = "failed"


class HandlerContext(Protocol):
    task: RequestTask
    page: Page

    async def enqueue(self, task: RequestTask, *, forefront: bool = False) -> bool: ...

    def retire_session(self) -> None: ...

    async def close_page(self) -> None: ...


@dataclass(frozen=True)
class FailedRequest:
    url: str
    label: str
    author_id: str | None
    namespace: BlockNamespace | None
    retry_count: int
    errors: tuple[str, ...]

    @property
    def classified(self) -> bool:
        return self.namespace is not None


@dataclass
class HandlerCounters:
    posts: int = 0
    videos: int = 0
    videos_resolved: int = 0
    follow_ups: int = 0
    blocked: dict[str, int] = field(default_factory=dict)


def video_follow_up(task: RequestTask, video_url: str) -> RequestTask:
    return RequestTask(
        url=video_url,
        label=RequestLabel.VIDEO,
        author_id=task.author_id,
        use_mobile=True,
        ref=video_url,
    )


async def check_blocked(page: Page, task: RequestTask, *, mobile_marker_timeout_ms: int) -> None:
    """
    Raise a ClassifiedError when the loaded page is an interstitial instead of content.

    Checks run in order and the first hit wins.
    """
    if markers.LOGIN_REDIRECT_RE.search(page.url or ""):
        raise ClassifiedError(
            "Content needs login to work, this will be retried but most likely won't work as expected",
            namespace=BlockNamespace.LOGIN,
            url=task.url,
        )

    if task.use_mobile:
        if await page.query_selector(markers.MOBILE_CAPTCHA):
            raise ClassifiedError(
                "Mobile captcha found",
                namespace=BlockNamespace.CAPTCHA,
                url=task.url,
            )

        try:
            await asyncio.gather(
                page.wait_for_selector(
                    markers.MOBILE_META,
                    state="attached",
                    timeout=mobile_marker_timeout_ms,
                ),
                page.wait_for_selector(
                    markers.MOBILE_BODY_CLASS,
                    state="attached",
                    timeout=mobile_marker_timeout_ms,
                ),
            )
        except PlaywrightTimeoutError as e:
            raise ClassifiedError(
                "An unexpected page layout was returned by the server",
                namespace=BlockNamespace.MOBILE_META,
                url=task.url,
            ) from e
    elif await page.query_selector(markers.DESKTOP_CAPTCHA):
        raise ClassifiedError(
            "Desktop captcha found",
            namespace=BlockNamespace.CAPTCHA,
            url=task.url,
        )

    if (await page.title()) == markers.ERROR_PAGE_TITLE:
        raise ClassifiedError(
            "Platform internal error page, it will be retried",
            namespace=BlockNamespace.INTERNAL,
            url=task.url,
        )


class PostCrawlHandler:
    """
    Per-request state machine registered with the crawl engine.

    POST pages are extracted and merged into the author record; a pending video link becomes a forefront
    VIDEO request for the same author. VIDEO pages always append a result, resolved or
    not, so every record terminates.
    """

    def __init__(
        self,
        config: AppConfig,
        store: AggregationStore,
        *,
        logger: RunLogger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._logger = logger
        self.counters = HandlerCounters()
        self.failed: list[FailedRequest] = []

    def _log(self, level: str, event: str, task: RequestTask, phase: RequestPhase, **data: Any) -> None:
        if self._logger is None:
            return
        self._logger.log(
            level,
            event,
            url=task.url,
            label=task.label.value,
            phase=phase.value,
            author_id=task.author_id,
            **data,
        )

    async def __call__(self, ctx: HandlerContext) -> None:
        task = ctx.task
        phase = RequestPhase.DEQUEUED
        self._log("DEBUG", "request_dequeued", task, phase, retry_count=task.retry_count)

        try:
            phase = RequestPhase.BLOCK_CHECK
            await check_blocked(
                ctx.page,
                task,
                mobile_marker_timeout_ms=self._config.extraction.mobile_marker_timeout_ms,
            )

            phase = RequestPhase.EXTRACTING

            if task.label is RequestLabel.POST:
                await self._handle_post(ctx)
            elif task.label is RequestLabel.VIDEO:
                await self._handle_video(ctx)
            else:
                raise ValueError(f"Unexpected request label: {task.label.value}")

            self._log("DEBUG", "request_done", task, RequestPhase.DONE)
        except ClassifiedError as e:
            self.counters.blocked[e.namespace.value] = self.counters.blocked.get(e.namespace.value, 0) + 1
            self._log(
                "WARN",
                "request_classified_failure",
                task,
                phase,
                namespace=e.namespace.value,
                error=str(e),
                retires_session=e.retires_session,
            )
            if e.retires_session:
                ctx.retire_session()
                await ctx.close_page()
            raise

    async def _handle_post(self, ctx: HandlerContext) -> None:
        task = ctx.task
        started = time.monotonic()

        record = await extract_post_record(
            ctx.page,
            task.canonical,
            timeout_ms=self._config.extraction.content_timeout_ms,
            logger=self._logger,
        )

        def _merge(current: PostRecord | None) -> PostRecord:
            return merge_post_result(current, record)

        merged = await self._store.append(task.author_id or "", _merge)
        self.counters.posts += 1

        if merged.pending_video_url:
            follow_up = video_follow_up(task, merged.pending_video_url)
            added = await ctx.enqueue(follow_up, forefront=True)
            if added:
                self.counters.follow_ups += 1
            self._log(
                "DEBUG",
                "video_follow_up",
                task,
                RequestPhase.ENQUEUE_FOLLOW_UP,
                video_url=follow_up.url,
                added=added,
            )

        self._log(
            "INFO",
            "post_processed",
            task,
            RequestPhase.AGGREGATING,
            seconds=round(time.monotonic() - started, 3),
        )

    async def _handle_video(self, ctx: HandlerContext) -> None:
        task = ctx.task
        started = time.monotonic()

        video_url = await acquire_video_url(ctx.page, self._config.video, logger=self._logger)
        result = VideoRef(post_url=task.url, video_url=video_url)

        def _merge(current: PostRecord | None) -> PostRecord:
            return merge_video_result(current, result)

        await self._store.append(task.author_id or "", _merge)
        self.counters.videos += 1
        if video_url is not None:
            self.counters.videos_resolved += 1

        self._log(
            "INFO",
            "video_processed",
            task,
            RequestPhase.AGGREGATING,
            video_url=video_url,
            seconds=round(time.monotonic() - started, 3),
        )

    def handle_failed_request(self, task: RequestTask, exc: BaseException) -> FailedRequest:
        """Record a request that exhausted its retries. Block-classified ones are expected."""
        namespace = classify_failure(exc)
        failed = FailedRequest(
            url=task.url,
            label=task.label.value,
            author_id=task.author_id,
            namespace=namespace,
            retry_count=task.retry_count,
            errors=tuple(task.error_messages),
        )
        self.failed.append(failed)

        if self._logger is not None:
            if namespace is not None:
                self._logger.exception(
                    "request_failed",
                    exc=exc,
                    url=task.url,
                    level="INFO",
                    namespace=namespace.value,
                    retry_count=task.retry_count,
                    phase=RequestPhase.FAILED.value,
                )
            else:
                self._logger.error(
                    "request_failed",
                    url=task.url,
                    error=str(exc),
                    retry_count=task.retry_count,
                    phase=RequestPhase.FAILED.value,
                )
        return failed
