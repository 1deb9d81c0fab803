from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd
import yaml

from .config_schema import AppConfig
from .errors import ExportError
from .models import DATASET_VERSION, PostRecord
from .storage import SQLiteStateStore

# Leading characters that make a spreadsheet treat a cell as a formula.
_FORMULA_LEAD = frozenset("=+-@")

_SHEETS = ("posts", "links", "failed_requests", "run_metadata")


def _cell(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = str(value)
    return "'" + text if text[:1] in _FORMULA_LEAD else text


def _joined(values: Iterable[str | None]) -> str:
    return " | ".join(t for t in ((v or "").strip() for v in values) if t)


def _schema_version(store: SQLiteStateStore) -> int:
    row = store.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return int(row[0]) if row is not None and row[0] is not None else 0


def _post_row(author_id: str, record: PostRecord) -> dict[str, Any]:
    stats = record.post_stats
    video = record.post_videos[-1] if record.post_videos else None
    return {
        "author_id": _cell(author_id),
        "name": _cell(record.name),
        "post_url": _cell(record.post_url),
        "post_date": _cell(record.post_date),
        "post_text": _cell(record.post_text),
        "logo_url": _cell(record.logo_url),
        "reactions": int(stats.reactions),
        "shares": int(stats.shares),
        "comments": int(stats.comments),
        "reactions_breakdown": _cell(
            json.dumps(stats.reactions_breakdown, ensure_ascii=False, sort_keys=True)
        ),
        "image_count": len(record.post_images),
        "image_urls": _cell(_joined(i.image_url for i in record.post_images)),
        "link_count": len(record.post_links),
        "video_page_url": _cell(video.post_url if video is not None else None),
        "video_url": _cell(video.video_url if video is not None else None),
        "pending_video_url": _cell(record.pending_video_url),
    }


def _link_rows(author_id: str, record: PostRecord) -> list[dict[str, Any]]:
    return [
        {
            "author_id": _cell(author_id),
            "post_url": _cell(record.post_url),
            "url": _cell(link.url),
            "domain": _cell(link.domain),
            "title": _cell(link.title),
            "text": _cell(link.text),
            "thumb_url": _cell(link.thumb_url),
        }
        for link in record.post_links
    ]


def export_dataset_workbook(
    config: AppConfig,
    store: SQLiteStateStore,
    records: Mapping[str, PostRecord],
    out_path: str | Path,
    *,
    run_id: str,
) -> Path:
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    post_rows: list[dict[str, Any]] = []
    link_rows: list[dict[str, Any]] = []
    domain_counts: Counter[str] = Counter()

    for author_id, record in records.items():
        post_rows.append(_post_row(author_id, record))
        rows = _link_rows(author_id, record)
        link_rows.extend(rows)
        for link in record.post_links:
            if link.domain:
                domain_counts[link.domain] += 1

    failed_rows: list[dict[str, Any]] = []
    for f in store.failed_requests(run_id=run_id):
        failed_rows.append(
            {
                "url": _cell(f.url),
                "label": _cell(f.label),
                "author_id": _cell(f.author_id),
                "namespace": _cell(f.namespace or "unclassified"),
                "retry_count": int(f.retry_count),
                "last_error": _cell(f.errors[-1] if f.errors else None),
                "failed_at": _cell(f.failed_at),
            }
        )

    run = store.get_run(run_id)
    versions = run.versions if run is not None else {}
    config_yaml = yaml.safe_dump(
        config.model_dump(mode="json"),
        sort_keys=True,
        allow_unicode=True,
    )
    schema_version = _schema_version(store)

    meta_rows: list[dict[str, Any]] = [
        {"key": "run_id", "value": _cell(run_id)},
        {"key": "exported_at_utc", "value": datetime.now(timezone.utc).isoformat()},
        {"key": "dataset_version", "value": DATASET_VERSION},
        {"key": "sqlite_schema_version", "value": int(schema_version)},
        {"key": "counts.posts", "value": len(post_rows)},
        {"key": "counts.links", "value": len(link_rows)},
        {"key": "counts.failed_requests", "value": len(failed_rows)},
        {
            "key": "counts.pending_videos",
            "value": sum(1 for r in records.values() if r.pending_video_url),
        },
        {
            "key": "counts.resolved_videos",
            "value": sum(1 for r in records.values() if any(v.video_url for v in r.post_videos)),
        },
        {"key": "run.started_at", "value": _cell(run.started_at if run is not None else None)},
        {"key": "run.ended_at", "value": _cell(run.ended_at if run is not None else None)},
        {"key": "run.config_hash", "value": _cell(run.config_hash if run is not None else None)},
        {"key": "versions_json", "value": _cell(json.dumps(versions, ensure_ascii=False, sort_keys=True))},
        {"key": "config_yaml", "value": _cell(config_yaml)},
        {"key": "output_path", "value": _cell(str(out))},
    ]

    domain_rows = [
        {"domain": _cell(d), "links": int(n)}
        for d, n in domain_counts.most_common(200)
    ]

    df_posts = pd.DataFrame(post_rows)
    df_links = pd.DataFrame(link_rows)
    df_failed = pd.DataFrame(failed_rows)
    df_meta = pd.DataFrame(meta_rows)
    df_domains = pd.DataFrame(domain_rows)

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            df_posts.to_excel(writer, sheet_name="posts", index=False)
            df_links.to_excel(writer, sheet_name="links", index=False)
            df_failed.to_excel(writer, sheet_name="failed_requests", index=False)

            df_meta.to_excel(writer, sheet_name="run_metadata", index=False)
            start = len(df_meta.index) + 2
            df_domains.to_excel(writer, sheet_name="run_metadata", index=False, startrow=start)

            wb = writer.book
            for name in _SHEETS:
                if name in wb.sheetnames:
                    ws = wb[name]
                    ws.freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out
