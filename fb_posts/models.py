from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DATASET_VERSION = 3


class RequestLabel(str, Enum):
    POST = "POST"
    PHOTO = "PHOTO"
    VIDEO = "VIDEO"
    UNRECOGNIZED = "UNRECOGNIZED"


class _Record(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ImageRef(_Record):
    link: str
    image_url: str


class LinkRef(_Record):
    url: str
    thumb_url: str | None = None
    domain: str | None = None
    title: str | None = None
    text: str | None = None

    def fill_from(self, other: "LinkRef") -> "LinkRef":
        """Fill only the optional fields that are still None."""
        update: dict[str, Any] = {}
        for name in ("thumb_url", "domain", "title", "text"):
            if getattr(self, name) is None and getattr(other, name) is not None:
                update[name] = getattr(other, name)
        if not update:
            return self
        return self.model_copy(update=update)


class VideoRef(_Record):
    post_url: str
    video_url: str | None = None


class PostStats(_Record):
    reactions: int = 0
    shares: int = 0
    comments: int = 0
    reactions_breakdown: dict[str, int] = Field(default_factory=dict)


class PostRecord(_Record):
    """
    Aggregated record for one author.

    Every field is optional because a record may be built up from partial observations.
    """

    name: str | None = None
    logo_url: str | None = None
    post_url: str | None = None
    post_date: str | None = None
    post_text: str | None = None
    post_images: list[ImageRef] = Field(default_factory=list)
    post_links: list[LinkRef] = Field(default_factory=list)
    post_videos: list[VideoRef] = Field(default_factory=list)
    post_stats: PostStats = Field(default_factory=PostStats)
    pending_video_url: str | None = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "PostRecord":
        return cls.model_validate(dict(data))


def merge_link_refs(existing: Iterable[LinkRef], incoming: Iterable[LinkRef]) -> list[LinkRef]:
    """
    Dedupe links by target URL, keeping first-seen order.

    A repeated URL only fills optional fields that are still None.
    """
    out: list[LinkRef] = []
    index: dict[str, int] = {}

    for link in list(existing) + list(incoming):
        pos = index.get(link.url)
        if pos is None:
            index[link.url] = len(out)
            out.append(link)
            continue
        out[pos] = out[pos].fill_from(link)

    return out


def dedupe_images(images: Iterable[ImageRef]) -> list[ImageRef]:
    out: list[ImageRef] = []
    seen: set[tuple[str, str]] = set()
    for img in images:
        key = (img.link, img.image_url)
        if key in seen:
            continue
        seen.add(key)
        out.append(img)
    return out


def merge_video_result(record: PostRecord | None, video: VideoRef) -> PostRecord:
    """
    Fold a video acquisition result into a record.

    Each record carries at most one VideoRef. A resolved URL replaces whatever is there;
    an unresolved one never hides an earlier resolution. The pending link is always
    cleared so the record terminates.
    """
    base = record or PostRecord()

    current = base.post_videos[-1] if base.post_videos else None
    if video.video_url is None and current is not None and current.video_url is not None:
        chosen = current
    else:
        chosen = video

    return base.model_copy(update={"post_videos": [chosen], "pending_video_url": None})


def merge_post_result(record: PostRecord | None, fresh: PostRecord) -> PostRecord:
    """
    Fold a post extraction into the author's existing record.

    The first extraction is stored as is. A later one refreshes the post content but
    keeps video results already folded in, and a video link that already has a result
    is not marked pending again.
    """
    if record is None:
        return fresh

    resolved = {v.post_url.casefold() for v in record.post_videos}
    pending = fresh.pending_video_url
    if pending is not None and pending.casefold() in resolved:
        pending = None

    return fresh.model_copy(
        update={
            "post_links": merge_link_refs(record.post_links, fresh.post_links),
            "post_videos": list(record.post_videos),
            "pending_video_url": pending,
        }
    )


def dataset_item(record: PostRecord, *, finished_at: str) -> dict[str, Any]:
    item = record.to_json()
    item["#version"] = DATASET_VERSION
    item["#finishedAt"] = finished_at
    return item
