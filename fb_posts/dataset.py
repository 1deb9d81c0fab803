from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import ExportError
from .models import PostRecord, dataset_item


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_complete(record: PostRecord | None) -> bool:
    """A record is complete once it exists and has no video sub-page left to resolve."""
    return record is not None and record.post_url is not None and not record.pending_video_url


def build_dataset_items(
    records: Mapping[str, PostRecord],
    *,
    finished_at: str | None = None,
) -> list[dict[str, Any]]:
    """Flatten the aggregated mapping into dataset items, one per author."""
    ts = (finished_at or utc_now_iso()).strip()
    return [dataset_item(record, finished_at=ts) for record in records.values()]


def write_jsonl(items: Iterable[Mapping[str, Any]], path: str | Path) -> Path:
    out = Path(path)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", encoding="utf-8", newline="\n") as fp:
            for item in items:
                fp.write(json.dumps(dict(item), ensure_ascii=False, sort_keys=True, default=str))
                fp.write("\n")
    except OSError as e:
        raise ExportError(f"Failed to write dataset file: {out}: {e}") from e
    return out


def read_jsonl(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    try:
        lines = p.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ExportError(f"Failed to read dataset file: {p}: {e}") from e

    out: list[dict[str, Any]] = []
    for n, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as e:
            raise ExportError(f"Invalid JSON on line {n} of {p}: {e}") from e
        if isinstance(item, dict):
            out.append(item)
    return out
