from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import SplitResult, parse_qs, urlencode, urlsplit, urlunsplit

from .models import RequestLabel

CANONICAL_HOST = "www.facebook.com"

_HOST_RE = re.compile(r"^(?:[a-z0-9-]+\.)?facebook\.com$")

# First path segments that are routes, never author names.
_RESERVED_SEGMENTS = frozenset(
    {
        "permalink.php",
        "story.php",
        "photo.php",
        "photo",
        "video.php",
        "watch",
        "groups",
        "login",
        "login.php",
        "pages",
        "profile.php",
        "events",
        "hashtag",
        "search",
        "stories",
    }
)

_ID_RE = re.compile(r"^[0-9]+$")
_PFBID_RE = re.compile(r"^(?:pfbid[0-9A-Za-z]+|[0-9]+)$")


@dataclass(frozen=True)
class UrlClassification:
    label: RequestLabel
    url: str
    author_id: str | None = None
    canonical: str | None = None

    @property
    def recognized(self) -> bool:
        return self.label is not RequestLabel.UNRECOGNIZED


def _split(url: str) -> SplitResult | None:
    value = (url or "").strip()
    if not value:
        return None
    if "://" not in value:
        value = "https://" + value.lstrip("/")
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if not _HOST_RE.fullmatch(host):
        return None
    return parts


def _segments(path: str) -> list[str]:
    return [s for s in (path or "").split("/") if s]


def _query(query: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, values in parse_qs(query or "", keep_blank_values=False).items():
        if values:
            out[key] = values[0].strip()
    return out


def _post_url(author: str, post_id: str) -> str:
    return urlunsplit(("https", CANONICAL_HOST, f"/{author}/posts/{post_id}", "", ""))


def _permalink_url(story_id: str, author: str) -> str:
    query = urlencode({"story_fbid": story_id, "id": author})
    return urlunsplit(("https", CANONICAL_HOST, "/permalink.php", query, ""))


def _parse_post(parts: SplitResult) -> tuple[str, str] | None:
    """Return (author_id, canonical) for any post shape, else None."""
    segs = _segments(parts.path)
    q = _query(parts.query)

    if segs and segs[0] in ("permalink.php", "story.php"):
        story = q.get("story_fbid", "")
        author = q.get("id", "")
        if _PFBID_RE.fullmatch(story) and author:
            return author, _permalink_url(story, author)
        return None

    if len(segs) >= 4 and segs[0] == "groups" and segs[2] in ("permalink", "posts"):
        group, post_id = segs[1], segs[3]
        if _PFBID_RE.fullmatch(post_id):
            canonical = urlunsplit(
                ("https", CANONICAL_HOST, f"/groups/{group}/permalink/{post_id}", "", "")
            )
            return group, canonical
        return None

    if len(segs) >= 3 and segs[0] not in _RESERVED_SEGMENTS and segs[1] == "posts":
        author, post_id = segs[0], segs[2]
        if _PFBID_RE.fullmatch(post_id):
            return author, _post_url(author, post_id)

    return None


def _is_photo(parts: SplitResult) -> bool:
    segs = _segments(parts.path)
    if len(segs) >= 3 and segs[0] not in _RESERVED_SEGMENTS and segs[1] == "photos":
        return True
    if segs and segs[0] in ("photo.php", "photo"):
        return "fbid" in _query(parts.query)
    return False


def _is_video(parts: SplitResult) -> bool:
    segs = _segments(parts.path)
    if len(segs) >= 3 and segs[0] not in _RESERVED_SEGMENTS and segs[1] == "videos":
        return True
    if segs and segs[0] in ("watch", "video.php"):
        return "v" in _query(parts.query)
    return False


def photo_to_post(url: str) -> str | None:
    """
    Rewrite a photo URL to the URL of the post that hosts it, when derivable.

    - /{author}/photos/{set}/{photo_id}  -> /{author}/posts/{photo_id}
    - /photo.php?fbid=X&id=A             -> /A/posts/X
    - set=pcb.{post_id} wins over fbid: the photo belongs to a multi-photo post.
    """
    parts = _split(url)
    if parts is None or not _is_photo(parts):
        return None

    segs = _segments(parts.path)
    q = _query(parts.query)

    pcb = q.get("set", "")
    pcb_id = pcb[4:] if pcb.startswith("pcb.") else ""

    if segs[0] in ("photo.php", "photo"):
        author = q.get("id", "")
        post_id = pcb_id or q.get("fbid", "")
        if author and _ID_RE.fullmatch(post_id):
            return _post_url(author, post_id)
        return None

    author = segs[0]
    post_id = pcb_id or segs[-1]
    if _ID_RE.fullmatch(post_id):
        return _post_url(author, post_id)
    return None


def extract_author_id(url: str) -> str | None:
    parts = _split(url)
    if parts is None:
        return None

    parsed = _parse_post(parts)
    if parsed is not None:
        return parsed[0]

    segs = _segments(parts.path)
    if segs and segs[0] not in _RESERVED_SEGMENTS:
        return segs[0]

    q = _query(parts.query)
    return q.get("id") or None


def canonical_permalink(url: str) -> str | None:
    """Device-independent permalink of a post URL (None when not a post)."""
    parts = _split(url)
    if parts is None:
        return None
    parsed = _parse_post(parts)
    return parsed[1] if parsed is not None else None


def normalize_video_url(url: str, *, mobile: bool = True) -> str:
    """
    Stable form of a video sub-page link: device host rewrite, tracking query dropped.

    `watch`/`video.php` links keep their `v` parameter since it is the video id.
    """
    parts = _split(url)
    if parts is None:
        return (url or "").strip()

    host = "m.facebook.com" if mobile else CANONICAL_HOST
    segs = _segments(parts.path)
    query = ""
    if segs and segs[0] in ("watch", "video.php"):
        v = _query(parts.query).get("v")
        query = urlencode({"v": v}) if v else ""

    path = "/" + "/".join(segs) if segs else "/"
    if segs and segs[0] not in ("watch", "video.php"):
        path += "/"
    return urlunsplit(("https", host, path, query, ""))


def classify_url(url: str) -> UrlClassification:
    """
    Map a raw URL to a request label, author identity and canonical permalink.

    Pure and deterministic. Unrecognized URLs are returned with the UNRECOGNIZED label.
    """
    raw = (url or "").strip()
    parts = _split(raw)
    if parts is None:
        return UrlClassification(label=RequestLabel.UNRECOGNIZED, url=raw)

    if _is_photo(parts):
        post = photo_to_post(raw)
        target = post or raw
        return UrlClassification(
            label=RequestLabel.PHOTO,
            url=target,
            author_id=extract_author_id(target),
            canonical=canonical_permalink(target),
        )

    parsed = _parse_post(parts)
    if parsed is not None:
        author, canonical = parsed
        return UrlClassification(
            label=RequestLabel.POST,
            url=raw,
            author_id=author,
            canonical=canonical,
        )

    if _is_video(parts):
        return UrlClassification(
            label=RequestLabel.VIDEO,
            url=normalize_video_url(raw),
            author_id=extract_author_id(raw),
        )

    return UrlClassification(label=RequestLabel.UNRECOGNIZED, url=raw)
