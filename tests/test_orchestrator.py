from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from page_fakes import FakeContext, FakePage, post_content

from fb_posts import markers
from fb_posts.aggregation import AggregationStore
from fb_posts.config_schema import AppConfig
from fb_posts.engine import RequestTask
from fb_posts.errors import (
    RETIRING_NAMESPACES,
    BlockNamespace,
    ClassifiedError,
    ExtractionError,
    classify_failure,
)
from fb_posts.models import PostRecord, RequestLabel
from fb_posts.orchestrator import PostCrawlHandler, check_blocked, video_follow_up
from fb_posts.run_log import RunLogger

_POST = "https://www.facebook.com/someone/posts/1"
_VIDEO_LINK = "https://www.facebook.com/someone/videos/9/"
_VIDEO_PAGE = "https://m.facebook.com/someone/videos/9/"


def _config() -> AppConfig:
    return AppConfig.model_validate(
        {
            "start_urls": [_POST],
            "extraction": {"content_timeout_ms": 10, "mobile_marker_timeout_ms": 10},
            "video": {
                "initial_delay_ms": 0,
                "settle_delay_ms": 0,
                "poster_timeout_ms": 10,
                "appear_timeout_ms": 10,
            },
        }
    )


class _Backend:
    def load_posts(self) -> dict:
        return {}

    def save_posts(self, posts: dict) -> None:
        pass


def _post_task() -> RequestTask:
    return RequestTask(url=_POST, label=RequestLabel.POST, author_id="someone", canonical=_POST)


def _video_task() -> RequestTask:
    return video_follow_up(_post_task(), _VIDEO_PAGE)


def _mobile_page(**kwargs: object) -> FakePage:
    present = set(kwargs.pop("present", ()))  # type: ignore[arg-type]
    present |= {markers.MOBILE_META, markers.MOBILE_BODY_CLASS}
    return FakePage(url=_VIDEO_PAGE, present=present, **kwargs)  # type: ignore[arg-type]


class TestCheckBlocked(unittest.IsolatedAsyncioTestCase):
    async def _namespace(self, page: FakePage, task: RequestTask) -> BlockNamespace:
        with self.assertRaises(ClassifiedError) as ctx:
            await check_blocked(page, task, mobile_marker_timeout_ms=10)
        return ctx.exception.namespace

    async def test_clean_desktop_page_passes(self) -> None:
        await check_blocked(FakePage(), _post_task(), mobile_marker_timeout_ms=10)

    async def test_clean_mobile_page_passes(self) -> None:
        await check_blocked(_mobile_page(), _video_task(), mobile_marker_timeout_ms=10)

    async def test_login_redirect(self) -> None:
        page = FakePage(url="https://www.facebook.com/login.php?next=https%3A%2F%2Fx")
        self.assertEqual(await self._namespace(page, _post_task()), BlockNamespace.LOGIN)

    async def test_desktop_captcha(self) -> None:
        page = FakePage(present={markers.DESKTOP_CAPTCHA})
        self.assertEqual(await self._namespace(page, _post_task()), BlockNamespace.CAPTCHA)

    async def test_mobile_captcha(self) -> None:
        page = _mobile_page(present={markers.MOBILE_CAPTCHA})
        self.assertEqual(await self._namespace(page, _video_task()), BlockNamespace.CAPTCHA)

    async def test_mobile_layout_markers_missing(self) -> None:
        page = FakePage(url=_VIDEO_PAGE, present={markers.MOBILE_META})
        self.assertEqual(await self._namespace(page, _video_task()), BlockNamespace.MOBILE_META)

    async def test_internal_error_page(self) -> None:
        page = FakePage(title="Error")
        self.assertEqual(await self._namespace(page, _post_task()), BlockNamespace.INTERNAL)

    async def test_login_wins_over_captcha(self) -> None:
        page = FakePage(
            url="https://www.facebook.com/login/?next=x",
            present={markers.DESKTOP_CAPTCHA},
            title="Error",
        )
        self.assertEqual(await self._namespace(page, _post_task()), BlockNamespace.LOGIN)


class TestPostCrawlHandler(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = AggregationStore(_Backend())
        self.handler = PostCrawlHandler(_config(), self.store)

    async def test_missing_content_writes_nothing_and_keeps_session(self) -> None:
        ctx = FakeContext(_post_task(), FakePage())

        with self.assertRaises(ExtractionError) as raised:
            await self.handler(ctx)

        self.assertEqual(raised.exception.namespace, BlockNamespace.MISSING_CONTENT)
        self.assertEqual(len(self.store), 0)
        self.assertFalse(ctx.session_retired)
        self.assertFalse(ctx.page_closed)
        self.assertEqual(self.handler.counters.blocked, {"missing-content": 1})

    async def test_post_without_video_is_written(self) -> None:
        page = FakePage(
            present={markers.POST_CONTAINER},
            evals={markers.POST_CONTAINER: post_content()},
        )
        ctx = FakeContext(_post_task(), page)

        await self.handler(ctx)

        record = self.store.get("someone")
        assert record is not None
        self.assertEqual(record.post_url, _POST)
        self.assertEqual(record.post_text, "Hello world")
        self.assertEqual(ctx.enqueued, [])
        self.assertEqual(self.handler.counters.posts, 1)

    async def test_post_with_video_enqueues_one_forefront_follow_up(self) -> None:
        raw = post_content(hasVideo=True, contentVideoLinks=[_VIDEO_LINK])
        ctx = FakeContext(_post_task(), FakePage())

        for _ in range(2):
            ctx.page = FakePage(present={markers.POST_CONTAINER}, evals={markers.POST_CONTAINER: raw})
            await self.handler(ctx)

        self.assertEqual(len(ctx.enqueued), 1)
        follow_up, forefront = ctx.enqueued[0]
        self.assertTrue(forefront)
        self.assertEqual(follow_up.label, RequestLabel.VIDEO)
        self.assertEqual(follow_up.url, _VIDEO_PAGE)
        self.assertEqual(follow_up.author_id, "someone")
        self.assertTrue(follow_up.use_mobile)
        self.assertEqual(follow_up.ref, _VIDEO_PAGE)
        self.assertEqual(self.handler.counters.follow_ups, 1)

        record = self.store.get("someone")
        assert record is not None
        self.assertEqual(record.pending_video_url, _VIDEO_PAGE)

    async def test_post_rerun_after_video_keeps_resolved_video(self) -> None:
        raw = post_content(hasVideo=True, contentVideoLinks=[_VIDEO_LINK])
        post_page = FakePage(present={markers.POST_CONTAINER}, evals={markers.POST_CONTAINER: raw})
        post_ctx = FakeContext(_post_task(), post_page)
        await self.handler(post_ctx)
        self.assertEqual(len(post_ctx.enqueued), 1)

        video_page = _mobile_page(
            present={markers.VIDEO_POSTER, markers.VIDEO_ELEMENT},
            evals={markers.VIDEO_POSTER: True, markers.VIDEO_ELEMENT: "https://cdn/v.mp4"},
        )
        await self.handler(FakeContext(post_ctx.enqueued[0][0], video_page))

        # Same POST handled again, as after a retry that follows a successful write.
        rerun_page = FakePage(present={markers.POST_CONTAINER}, evals={markers.POST_CONTAINER: raw})
        rerun = FakeContext(_post_task(), rerun_page)
        await self.handler(rerun)

        record = self.store.get("someone")
        assert record is not None
        self.assertEqual(len(record.post_videos), 1)
        self.assertEqual(record.post_videos[0].post_url, _VIDEO_PAGE)
        self.assertEqual(record.post_videos[0].video_url, "https://cdn/v.mp4")
        self.assertIsNone(record.pending_video_url)
        self.assertEqual(record.post_text, "Hello world")
        self.assertEqual(rerun.enqueued, [])
        self.assertEqual(self.handler.counters.follow_ups, 1)

    async def test_follow_up_goes_to_the_front(self) -> None:
        page = FakePage(
            present={markers.POST_CONTAINER},
            evals={markers.POST_CONTAINER: post_content(headerVideoLinks=[_VIDEO_LINK])},
        )
        ctx = FakeContext(_post_task(), page)
        await self.handler(ctx)
        self.assertEqual(len(ctx.enqueued), 1)
        self.assertTrue(ctx.enqueued[0][1])

    async def test_video_without_poster_terminates_record(self) -> None:
        await self.store.write("someone", PostRecord(post_url=_POST, pending_video_url=_VIDEO_PAGE))
        ctx = FakeContext(_video_task(), _mobile_page())

        await self.handler(ctx)

        record = self.store.get("someone")
        assert record is not None
        self.assertIsNone(record.pending_video_url)
        self.assertEqual(len(record.post_videos), 1)
        self.assertEqual(record.post_videos[0].post_url, _VIDEO_PAGE)
        self.assertIsNone(record.post_videos[0].video_url)
        self.assertEqual(record.post_url, _POST)
        self.assertEqual(self.handler.counters.videos, 1)
        self.assertEqual(self.handler.counters.videos_resolved, 0)

    async def test_video_resolved(self) -> None:
        await self.store.write("someone", PostRecord(post_url=_POST, pending_video_url=_VIDEO_PAGE))
        page = _mobile_page(
            present={markers.VIDEO_POSTER, markers.VIDEO_ELEMENT},
            evals={markers.VIDEO_POSTER: True, markers.VIDEO_ELEMENT: "https://cdn/v.mp4"},
        )

        await self.handler(FakeContext(_video_task(), page))

        record = self.store.get("someone")
        assert record is not None
        self.assertEqual(record.post_videos[0].video_url, "https://cdn/v.mp4")
        self.assertEqual(self.handler.counters.videos_resolved, 1)

    async def test_captcha_retires_session_and_closes_page(self) -> None:
        ctx = FakeContext(_post_task(), FakePage(present={markers.DESKTOP_CAPTCHA}))

        with self.assertRaises(ClassifiedError) as raised:
            await self.handler(ctx)

        self.assertEqual(raised.exception.namespace, BlockNamespace.CAPTCHA)
        self.assertTrue(ctx.session_retired)
        self.assertTrue(ctx.page_closed)
        self.assertEqual(len(self.store), 0)

    async def test_mobile_meta_retires_session(self) -> None:
        ctx = FakeContext(_video_task(), FakePage(url=_VIDEO_PAGE))
        with self.assertRaises(ClassifiedError):
            await self.handler(ctx)
        self.assertTrue(ctx.session_retired)

    async def test_unclassified_failure_propagates_without_retiring(self) -> None:
        page = FakePage(
            present={markers.POST_CONTAINER},
            evals={markers.POST_CONTAINER: RuntimeError("boom")},
        )
        ctx = FakeContext(_post_task(), page)

        with self.assertRaises(RuntimeError):
            await self.handler(ctx)

        self.assertFalse(ctx.session_retired)
        self.assertEqual(self.handler.counters.blocked, {})

    async def test_photo_label_is_rejected(self) -> None:
        task = RequestTask(url=_POST, label=RequestLabel.PHOTO, author_id="someone")
        with self.assertRaises(ValueError):
            await self.handler(FakeContext(task, FakePage()))


class TestFailedRequests(unittest.TestCase):
    def test_handle_failed_request_records_namespace_and_logs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log_path = Path(td) / "run.log"
            with RunLogger.open(log_path) as log:
                handler = PostCrawlHandler(_config(), AggregationStore(_Backend()), logger=log)

                task = _post_task()
                task.retry_count = 10
                task.error_messages.append("ClassifiedError: Desktop captcha found")
                blocked = handler.handle_failed_request(
                    task,
                    ClassifiedError("Desktop captcha found", namespace=BlockNamespace.CAPTCHA),
                )

                other = handler.handle_failed_request(_video_task(), RuntimeError("boom"))

            self.assertEqual(blocked.namespace, BlockNamespace.CAPTCHA)
            self.assertTrue(blocked.classified)
            self.assertEqual(blocked.retry_count, 10)
            self.assertEqual(blocked.errors, ("ClassifiedError: Desktop captcha found",))
            self.assertIsNone(other.namespace)
            self.assertFalse(other.classified)
            self.assertEqual(len(handler.failed), 2)

            records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
            failed = [r for r in records if r["event"] == "request_failed"]
            self.assertEqual([r["level"] for r in failed], ["INFO", "ERROR"])
            self.assertEqual(failed[0]["data"]["namespace"], "captcha")


class TestFailureTaxonomy(unittest.TestCase):
    def test_classify_failure(self) -> None:
        self.assertEqual(
            classify_failure(ClassifiedError("x", namespace=BlockNamespace.LOGIN)),
            BlockNamespace.LOGIN,
        )
        self.assertEqual(classify_failure(ExtractionError("x")), BlockNamespace.MISSING_CONTENT)
        self.assertIsNone(classify_failure(RuntimeError("boom")))

    def test_only_block_namespaces_retire_sessions(self) -> None:
        retiring = {ns for ns in BlockNamespace if ClassifiedError("x", namespace=ns).retires_session}
        self.assertEqual(retiring, set(RETIRING_NAMESPACES))
        self.assertNotIn(BlockNamespace.MISSING_CONTENT, retiring)
        self.assertEqual(
            ClassifiedError("x", namespace=BlockNamespace.CAPTCHA, url="https://x").to_json()["namespace"],
            "captcha",
        )


if __name__ == "__main__":
    unittest.main()
