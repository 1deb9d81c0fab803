from __future__ import annotations

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import markers
from .config_schema import VideoConfig
from .run_log import RunLogger

_IS_HIDDEN_JS = "el => el.offsetParent === null"
_CLICK_JS = "el => { el.click(); return true; }"
_VIDEO_SRC_JS = "el => el.src || el.currentSrc || null"


async def wait_for_cookie_prompt_hidden(
    page: Page,
    settings: VideoConfig,
    *,
    logger: RunLogger | None = None,
    attempt: int = 1,
) -> bool:
    """
    Poll the cookie consent control until it is hidden or the poll ceiling is hit.

    Returns True when the control is hidden or absent. Lookup failures count as absent.
    """
    try:
        hidden = await page.eval_on_selector(markers.COOKIE_ACCEPT, _IS_HIDDEN_JS)
    except PlaywrightError:
        return True

    if hidden:
        if logger is not None:
            logger.debug("cookie_prompt_hidden", url=page.url, polls=attempt)
        return True

    if attempt >= settings.cookie_max_polls:
        if logger is not None:
            logger.debug("cookie_prompt_still_visible", url=page.url, polls=attempt)
        return False

    await page.wait_for_timeout(settings.cookie_poll_interval_ms)
    return await wait_for_cookie_prompt_hidden(page, settings, logger=logger, attempt=attempt + 1)


async def acquire_video_url(
    page: Page,
    settings: VideoConfig,
    *,
    logger: RunLogger | None = None,
) -> str | None:
    """
    Drive the video sub-page until a playable source URL shows up.

    Returns None when the poster never appears, the click does not register, or no
    `video` element appears after it. A missing video is an outcome, not an error.
    """
    try:
        return await _acquire(page, settings, logger=logger)
    except PlaywrightError as e:
        if logger is not None:
            logger.warning("video_acquisition_failed", url=page.url, error=str(e))
        return None


async def _acquire(page: Page, settings: VideoConfig, *, logger: RunLogger | None) -> str | None:
    if settings.initial_delay_ms > 0:
        await page.wait_for_timeout(settings.initial_delay_ms)

    await wait_for_cookie_prompt_hidden(page, settings, logger=logger)

    try:
        await page.wait_for_selector(markers.VIDEO_POSTER, timeout=settings.poster_timeout_ms)
    except PlaywrightTimeoutError:
        if logger is not None:
            logger.info("video_poster_missing", url=page.url)
        return None

    if settings.settle_delay_ms > 0:
        await page.wait_for_timeout(settings.settle_delay_ms)

    try:
        clicked = await page.eval_on_selector(markers.VIDEO_POSTER, _CLICK_JS)
    except PlaywrightError as e:
        if logger is not None:
            logger.info("video_play_failed", url=page.url, error=str(e))
        return None

    if not clicked:
        if logger is not None:
            logger.debug("video_play_not_clicked", url=page.url)
        return None

    try:
        await page.wait_for_selector(markers.VIDEO_ELEMENT, timeout=settings.appear_timeout_ms)
    except PlaywrightTimeoutError:
        if logger is not None:
            logger.info("video_element_missing", url=page.url)
        return None

    try:
        src = await page.eval_on_selector(markers.VIDEO_ELEMENT, _VIDEO_SRC_JS)
    except PlaywrightError as e:
        if logger is not None:
            logger.info("video_src_failed", url=page.url, error=str(e))
        return None

    url = (src or "").strip() if isinstance(src, str) else ""
    if not url:
        return None

    if logger is not None:
        logger.debug("video_found", url=page.url, video_url=url)
    return url
