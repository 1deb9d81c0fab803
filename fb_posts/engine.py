from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Sequence

from crawlee import ConcurrencySettings, Request
from crawlee.crawlers import (
    BasicCrawler,
    BasicCrawlingContext,
    PlaywrightCrawler,
    PlaywrightCrawlingContext,
    PlaywrightPreNavCrawlingContext,
)
from crawlee.fingerprint_suite import DefaultFingerprintGenerator, HeaderGeneratorOptions
from crawlee.proxy_configuration import ProxyConfiguration
from crawlee.sessions import SessionPool
from crawlee.storage_clients import MemoryStorageClient
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Route

from .config_schema import AppConfig, DeviceProfile
from .models import RequestLabel
from .run_log import RunLogger

_COOKIE_DOMAIN = ".facebook.com"
_ERRORS_KEY = "errors"
_COOKIES_KEY = "cookies"


@dataclass
class RequestTask:
    """One unit of crawl work: a URL with its label and the data carried along with it."""

    url: str
    label: RequestLabel
    author_id: str | None = None
    canonical: str | None = None
    use_mobile: bool = False
    ref: str | None = None
    unique_key: str = ""
    retry_count: int = 0
    error_messages: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.url = (self.url or "").strip()
        if not self.url:
            raise ValueError("url must be non-empty")
        self.label = RequestLabel(self.label)
        if not self.unique_key:
            self.unique_key = f"{self.label.value}:{self.url.casefold()}"

    def to_json(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "label": self.label.value,
            "author_id": self.author_id,
            "canonical": self.canonical,
            "use_mobile": self.use_mobile,
            "ref": self.ref,
            "retry_count": self.retry_count,
        }

    def to_request(self) -> Request:
        return Request.from_url(
            self.url,
            label=self.label.value,
            unique_key=self.unique_key,
            user_data={
                "author_id": self.author_id,
                "canonical": self.canonical,
                "use_mobile": self.use_mobile,
                "ref": self.ref,
                _ERRORS_KEY: list(self.error_messages),
            },
        )

    @classmethod
    def from_request(cls, request: Request) -> "RequestTask":
        data = request.user_data
        return cls(
            url=request.url,
            label=RequestLabel(request.label or RequestLabel.POST.value),
            author_id=data.get("author_id"),
            canonical=data.get("canonical"),
            use_mobile=bool(data.get("use_mobile")),
            ref=data.get("ref"),
            unique_key=request.unique_key,
            retry_count=request.retry_count,
            error_messages=[str(e) for e in (data.get(_ERRORS_KEY) or [])],
        )


@dataclass(frozen=True)
class CrawlStats:
    handled: int
    failed: int
    retries: int
    sessions_retired: int


RequestHandler = Callable[["CrawlContext"], Awaitable[None]]
FailedRequestHandler = Callable[[RequestTask, BaseException], Any]


def _describe(exc: BaseException) -> str:
    message = (str(exc) or "").strip() or type(exc).__name__
    return f"{type(exc).__name__}: {message}"


def locale_cookie(language: str) -> dict[str, Any]:
    return {
        "name": "locale",
        "value": language.replace("-", "_"),
        "domain": _COOKIE_DOMAIN,
        "path": "/",
    }


def device_headers(device: DeviceProfile, *, language: str) -> dict[str, str]:
    return {"User-Agent": device.user_agent, "Accept-Language": language}


class AssetRouter:
    """
    `page.route` handler: aborts blocked asset URLs and serves cacheable static
    resources from memory after their first successful fetch.
    """

    def __init__(self, blocked: Sequence[str], cacheable: Sequence[str] = ()) -> None:
        self._blocked = tuple(blocked)
        self._cacheable = tuple(re.compile(p) for p in cacheable)
        self._cache: dict[str, tuple[int, dict[str, str], bytes]] = {}
        self.aborted = 0
        self.cache_hits = 0

    def blocks(self, url: str) -> bool:
        return any(pattern in url for pattern in self._blocked)

    def caches(self, url: str) -> bool:
        return any(r.search(url) for r in self._cacheable)

    async def __call__(self, route: Route) -> None:
        url = route.request.url
        if self.blocks(url):
            self.aborted += 1
            await route.abort()
            return
        if not self.caches(url):
            await route.continue_()
            return

        cached = self._cache.get(url)
        if cached is None:
            response = await route.fetch()
            body = await response.body()
            cached = (response.status, dict(response.headers), body)
            if response.ok:
                self._cache[url] = cached
        else:
            self.cache_hits += 1

        status, headers, body = cached
        await route.fulfill(status=status, headers=headers, body=body)


class CrawlContext:
    """What a request handler sees: the task, its loaded page and the engine hooks."""

    def __init__(self, context: PlaywrightCrawlingContext, engine: "BrowserCrawler") -> None:
        self.task = RequestTask.from_request(context.request)
        self.page: Page = context.page
        self._context = context
        self._engine = engine
        self.session_retired = False

    async def enqueue(self, task: RequestTask, *, forefront: bool = False) -> bool:
        return await self._engine.enqueue(task, forefront=forefront)

    def retire_session(self) -> None:
        session = self._context.session
        if session is not None and not self.session_retired:
            session.retire()
            self.session_retired = True
            self._engine.sessions_retired += 1

    async def close_page(self) -> None:
        try:
            await self.page.close()
        except PlaywrightError:
            pass


class BrowserCrawler:
    """
    Crawlee PlaywrightCrawler wired to the post handler.

    Crawlee owns the request queue, concurrency, sessions, proxies and the retry ceiling.
    This class adapts its hooks: device emulation and asset routing before navigation,
    a `CrawlContext` for the handler, and the failed-request hook once retries run out.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        request_handler: RequestHandler,
        failed_request_handler: FailedRequestHandler | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._config = config
        self._request_handler = request_handler
        self._failed_request_handler = failed_request_handler
        self._logger = logger
        self._crawler: BasicCrawler | None = None
        self.router = AssetRouter(config.blocking.url_patterns, config.blocking.cache_patterns)
        self.sessions_retired = 0

    def crawler_options(self) -> dict[str, Any]:
        crawler = self._config.crawler
        sessions = self._config.sessions
        options: dict[str, Any] = {
            "browser_type": "chromium",
            "headless": crawler.headless,
            "use_incognito_pages": True,
            "browser_new_context_options": {"locale": crawler.language},
            "max_request_retries": crawler.max_request_retries,
            "request_handler_timeout": timedelta(seconds=crawler.handle_page_timeout_secs),
            "concurrency_settings": ConcurrencySettings(max_concurrency=crawler.max_concurrency),
            "use_session_pool": True,
            "session_pool": SessionPool(
                max_pool_size=sessions.max_pool_size,
                create_session_settings={
                    "max_error_score": sessions.max_error_score,
                    "max_usage_count": sessions.max_usage_count,
                },
            ),
            "storage_client": MemoryStorageClient(),
            "configure_logging": False,
        }
        if self._config.proxy.urls:
            options["proxy_configuration"] = ProxyConfiguration(proxy_urls=list(self._config.proxy.urls))
        if crawler.stealth:
            options["fingerprint_generator"] = DefaultFingerprintGenerator(
                header_options=HeaderGeneratorOptions(browsers=["chromium"]),
            )
        else:
            options["fingerprint_generator"] = None
        return options

    def attach(self, crawler: BasicCrawler) -> BasicCrawler:
        """Register the retry and failure hooks on `crawler`."""
        self._crawler = crawler
        crawler.error_handler(self.on_error)
        crawler.failed_request_handler(self.on_failed)
        return crawler

    async def run(self, tasks: Iterable[RequestTask] = ()) -> CrawlStats:
        crawler = PlaywrightCrawler(request_handler=self.handle, **self.crawler_options())
        crawler.pre_navigation_hook(self.prepare_page)
        self.attach(crawler)

        stats = await crawler.run([t.to_request() for t in tasks])
        return CrawlStats(
            handled=int(stats.requests_finished),
            failed=int(stats.requests_failed),
            retries=sum(i * n for i, n in enumerate(stats.retry_histogram)),
            sessions_retired=self.sessions_retired,
        )

    async def enqueue(self, task: RequestTask, *, forefront: bool = False) -> bool:
        if self._crawler is None:
            raise RuntimeError("crawler is not running")
        queue = await self._crawler.get_request_manager()
        processed = await queue.add_request(task.to_request(), forefront=forefront)
        return processed is not None and not processed.was_already_present

    async def prepare_page(self, context: PlaywrightPreNavCrawlingContext) -> None:
        crawler = self._config.crawler
        task = RequestTask.from_request(context.request)
        device = self._config.devices.for_request(use_mobile=task.use_mobile)
        page = context.page

        page.set_default_navigation_timeout(crawler.navigation_timeout_secs * 1000)
        await page.set_viewport_size({"width": device.width, "height": device.height})
        if device.is_mobile or device.has_touch or device.device_scale_factor != 1.0:
            # Context options are crawler-wide; mobile emulation is applied per page.
            cdp = await page.context.new_cdp_session(page)
            await cdp.send(
                "Emulation.setDeviceMetricsOverride",
                {
                    "width": device.width,
                    "height": device.height,
                    "deviceScaleFactor": device.device_scale_factor,
                    "mobile": device.is_mobile,
                },
            )
            await cdp.send("Emulation.setTouchEmulationEnabled", {"enabled": device.has_touch})
        await page.set_extra_http_headers(device_headers(device, language=crawler.language))

        cookies = [locale_cookie(crawler.language)]
        if self._config.sessions.persist_cookies and context.session is not None:
            cookies.extend(context.session.user_data.get(_COOKIES_KEY) or [])
        await page.context.add_cookies(cookies)

        await page.route("**/*", self.router)

    async def handle(self, context: PlaywrightCrawlingContext) -> None:
        ctx = CrawlContext(context, self)
        if self._logger is not None:
            self._logger.debug(
                "request_started",
                url=ctx.task.url,
                label=ctx.task.label.value,
                retry_count=ctx.task.retry_count,
            )

        await self._request_handler(ctx)

        session = context.session
        if (
            self._config.sessions.persist_cookies
            and session is not None
            and not ctx.session_retired
            and not ctx.page.is_closed()
        ):
            state = await ctx.page.context.storage_state()
            session.user_data[_COOKIES_KEY] = list(state.get("cookies") or [])

    async def on_error(self, context: BasicCrawlingContext, error: Exception) -> None:
        """Called by crawlee for each failure that will be retried."""
        request = context.request
        errors = list(request.user_data.get(_ERRORS_KEY) or [])
        errors.append(_describe(error))
        request.user_data[_ERRORS_KEY] = errors

        if self._logger is not None:
            self._logger.info(
                "request_retry",
                url=request.url,
                label=request.label,
                retry_count=request.retry_count,
                error=str(error),
            )

    async def on_failed(self, context: BasicCrawlingContext, error: Exception) -> None:
        """Called by crawlee once a request has exhausted its retries."""
        task = RequestTask.from_request(context.request)
        task.error_messages.append(_describe(error))
        if self._failed_request_handler is not None:
            result = self._failed_request_handler(task, error)
            if inspect.isawaitable(result):
                await result
