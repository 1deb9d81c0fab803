from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qs, urlsplit

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from . import markers
from .errors import ExtractionError
from .jsliteral import JSLiteralError, parse_js_literal
from .models import ImageRef, LinkRef, PostRecord, PostStats, dedupe_images, merge_link_refs
from .run_log import RunLogger
from .urls import normalize_video_url

_COMMENTS_RE = re.compile(r'"?comment_count"?:\{"?total_count"?:(\d+)')
_REACTIONS_RE = re.compile(r'"?reaction_count"?:\{"?count"?:(\d+)')
_SHARES_RE = re.compile(r'"?share_count"?:\{"?count"?:(\d+)')

_BREAKDOWN_START_MARKERS = ("top_reactions:{edges:", '"top_reactions":{"edges":')
_BREAKDOWN_END_MARKER = "}]}"

_POST_CONTENT_JS = """
(el, sel) => {
  const text = (node) => (node && (node.innerText || node.textContent) || '').trim() || null;
  const utime = el.querySelector('[data-utime]');
  const userContent = el.querySelector(sel.userContent);
  if (!userContent) {
    return { hasContent: false };
  }

  const header = userContent.parentElement ? userContent.parentElement.firstElementChild : null;
  const headerLinks = header ? Array.from(header.querySelectorAll('a')) : [];
  const nameLink = headerLinks.find((a) => text(a));
  const avatar = header ? header.querySelector('[role="img"]') : null;

  const images = [];
  for (const img of el.querySelectorAll(sel.assetImage)) {
    const anchor = img.closest(sel.lightbox);
    if (anchor && anchor.href && img.src) {
      images.push({ link: anchor.href, imageUrl: img.src });
    }
  }

  const links = [];
  for (const a of el.querySelectorAll(sel.linkRedirect)) {
    if (!a.href) continue;
    const outer = a.parentElement && a.parentElement.parentElement;
    const thumb = a.querySelector(sel.linkThumb);
    links.push({
      href: a.href,
      thumbUrl: thumb ? thumb.getAttribute('src') : null,
      domain: outer ? text(outer.querySelector(sel.linkDomain)) : null,
      title: a.getAttribute('aria-label') || null,
      text: text(a.querySelector(sel.linkText)),
    });
  }

  const isVideoLink = (a) => a.href && a.href.includes('/videos/');
  const hasVideo = !!el.querySelector('video');
  const contentVideoLinks = hasVideo
    ? Array.from(el.querySelectorAll('a')).filter(isVideoLink).map((a) => a.href)
    : [];

  return {
    hasContent: true,
    utime: utime ? utime.getAttribute('data-utime') : null,
    postText: text(userContent),
    name: nameLink ? text(nameLink) : null,
    logoUrl: avatar ? avatar.getAttribute('src') : null,
    images,
    links,
    hasVideo,
    contentVideoLinks,
    headerVideoLinks: headerLinks.filter(isVideoLink).map((a) => a.href),
  };
}
"""

_SCRIPTS_JS = """
(scripts, needles) => scripts
  .map((s) => s.textContent || '')
  .filter((t) => {
    const low = t.toLowerCase();
    return needles.some((n) => low.includes(n));
  })
  .join('\\n')
"""

_SELECTORS_ARG = {
    "userContent": markers.USER_CONTENT,
    "assetImage": markers.ASSET_IMAGE,
    "lightbox": markers.LIGHTBOX_ANCHOR,
    "linkRedirect": markers.LINK_REDIRECT,
    "linkThumb": markers.LINK_THUMB,
    "linkDomain": markers.LINK_DOMAIN,
    "linkText": markers.LINK_TEXT,
}


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def convert_date(utime: Any) -> str | None:
    """Unix seconds (as found in data-utime) to an ISO-8601 UTC string."""
    if utime is None or isinstance(utime, bool):
        return None
    try:
        seconds = int(str(utime).strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def decode_redirect_target(href: str) -> str | None:
    """Return the real destination hidden in a link-redirect `u` parameter."""
    try:
        query = urlsplit(href or "").query
    except ValueError:
        return None
    values = parse_qs(query).get("u")
    if not values:
        return None
    return _coerce_str(values[0])


def _link_refs(raw_links: Iterable[Mapping[str, Any]]) -> list[LinkRef]:
    refs: list[LinkRef] = []
    for raw in raw_links:
        target = decode_redirect_target(str(raw.get("href") or ""))
        if not target:
            continue
        refs.append(
            LinkRef(
                url=target,
                thumb_url=_coerce_str(raw.get("thumbUrl")),
                domain=_coerce_str(raw.get("domain")),
                title=_coerce_str(raw.get("title")),
                text=_coerce_str(raw.get("text")),
            )
        )
    return merge_link_refs([], refs)


def _pending_video_url(raw: Mapping[str, Any]) -> str | None:
    # One video per post: the content region wins, the header is the fallback.
    candidates: list[Any] = []
    if raw.get("hasVideo"):
        candidates.extend(raw.get("contentVideoLinks") or [])
    candidates.extend(raw.get("headerVideoLinks") or [])

    for value in candidates:
        href = _coerce_str(value)
        if href:
            return normalize_video_url(href)
    return None


def build_post_content(raw: Mapping[str, Any], *, post_url: str) -> PostRecord:
    """Turn the raw in-page observations into a PostRecord fragment."""
    images: list[ImageRef] = []
    for img in raw.get("images") or []:
        link = _coerce_str(img.get("link"))
        src = _coerce_str(img.get("imageUrl"))
        if link and src:
            images.append(ImageRef(link=link, image_url=src))

    return PostRecord(
        name=_coerce_str(raw.get("name")),
        logo_url=_coerce_str(raw.get("logoUrl")),
        post_url=post_url,
        post_date=convert_date(raw.get("utime")),
        post_text=_coerce_str(raw.get("postText")),
        post_images=dedupe_images(images),
        post_links=_link_refs(raw.get("links") or []),
        pending_video_url=_pending_video_url(raw),
    )


def max_from_matches(values: Iterable[str]) -> int:
    """Largest integer among matched numeric strings, 0 when there are none."""
    best = 0
    for value in values:
        try:
            n = int(value)
        except (TypeError, ValueError):
            continue
        if n > best:
            best = n
    return best


def parse_reactions_breakdown(text: str) -> dict[str, int]:
    """
    Read the per-reaction-type counts from the `top_reactions` fragment.

    Any absence or malformation yields an empty mapping.
    """
    source = text or ""
    for start in _BREAKDOWN_START_MARKERS:
        _, sep, tail = source.partition(start)
        if not sep:
            continue
        body, end, _rest = tail.partition(_BREAKDOWN_END_MARKER)
        if not end:
            return {}
        try:
            edges = parse_js_literal(body + "}]")
        except JSLiteralError:
            return {}
        return _breakdown_from_edges(edges)
    return {}


def _breakdown_from_edges(edges: Any) -> dict[str, int]:
    if not isinstance(edges, list):
        return {}

    out: dict[str, int] = {}
    for edge in edges:
        if not isinstance(edge, dict):
            continue
        node = edge.get("node")
        count = edge.get("reaction_count")
        if not isinstance(node, dict) or isinstance(count, bool) or not isinstance(count, int):
            continue
        name = _coerce_str(node.get("reaction_type"))
        if name:
            out[name.lower()] = count
    return out


def stats_from_script_text(text: str) -> PostStats:
    return PostStats(
        comments=max_from_matches(_COMMENTS_RE.findall(text)),
        reactions=max_from_matches(_REACTIONS_RE.findall(text)),
        shares=max_from_matches(_SHARES_RE.findall(text)),
        reactions_breakdown=parse_reactions_breakdown(text),
    )


def _script_needles(canonical_url: str) -> list[str]:
    url = canonical_url.lower()
    escaped = url.replace("/", "\\/")
    needles: list[str] = []
    for u in (url, escaped):
        needles.append(f'url:"{u}')
        needles.append(f'"url":"{u}')
    return needles


async def extract_post(page: Page, canonical_url: str | None, *, timeout_ms: int) -> PostRecord:
    """
    Read the post content region.

    Raises ExtractionError when the region, or the user content inside it, is absent.
    """
    try:
        await page.wait_for_selector(markers.POST_CONTAINER, timeout=timeout_ms)
    except PlaywrightTimeoutError as e:
        raise ExtractionError(
            f"Missing {markers.POST_CONTAINER}",
            url=page.url,
        ) from e

    raw = await page.eval_on_selector(markers.POST_CONTAINER, _POST_CONTENT_JS, _SELECTORS_ARG)
    if not isinstance(raw, dict) or not raw.get("hasContent"):
        raise ExtractionError(f"Missing {markers.USER_CONTENT}", url=page.url)

    return build_post_content(raw, post_url=canonical_url or page.url)


async def extract_stats(
    page: Page,
    canonical_url: str | None,
    *,
    logger: RunLogger | None = None,
) -> PostStats:
    """
    Count comments, reactions and shares from the inline scripts about this post.

    Never raises: failures degrade to zero counts.
    """
    if not canonical_url:
        return PostStats()

    try:
        text = await page.eval_on_selector_all(
            "script",
            _SCRIPTS_JS,
            _script_needles(canonical_url),
        )
    except Exception as e:
        if logger is not None:
            logger.warning("post_stats_failed", url=page.url, error=str(e))
        return PostStats()

    return stats_from_script_text(text if isinstance(text, str) else "")


async def extract_post_record(
    page: Page,
    canonical_url: str | None,
    *,
    timeout_ms: int,
    logger: RunLogger | None = None,
) -> PostRecord:
    """Run both passes concurrently and merge them into one record."""
    content, stats = await asyncio.gather(
        extract_post(page, canonical_url, timeout_ms=timeout_ms),
        extract_stats(page, canonical_url, logger=logger),
        return_exceptions=True,
    )

    if isinstance(content, BaseException):
        raise content
    if isinstance(stats, asyncio.CancelledError):
        raise stats

    if isinstance(stats, BaseException):
        if logger is not None:
            logger.warning("post_stats_failed", url=page.url, error=str(stats))
        stats = PostStats()

    return content.model_copy(update={"post_stats": stats})
