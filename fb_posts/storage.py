from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .errors import StorageError
from .storage_schema import initialize_sqlite

_RUN_COLUMNS = "run_id, started_at, ended_at, config_hash, versions_json"
_FAILED_COLUMNS = (
    "run_id, url, label, author_id, namespace, retry_count, errors_json, failed_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def _required(value: str | None, name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValueError(f"{name} must be non-empty")
    return text


def _optional(value: str | None) -> str | None:
    return (value or "").strip() or None


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    started_at: str
    ended_at: str | None
    config_hash: str
    versions: dict[str, str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RunRecord":
        try:
            versions = json.loads(row["versions_json"] or "{}")
        except json.JSONDecodeError:
            versions = {}
        if not isinstance(versions, dict):
            versions = {}
        return cls(
            run_id=row["run_id"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            config_hash=row["config_hash"],
            versions={str(k): str(v) for k, v in versions.items()},
        )


@dataclass(frozen=True)
class FailedRequestRecord:
    run_id: str
    url: str
    label: str
    author_id: str | None
    namespace: str | None
    retry_count: int
    errors: list[str]
    failed_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FailedRequestRecord":
        try:
            errors = json.loads(row["errors_json"] or "[]")
        except json.JSONDecodeError:
            errors = []
        return cls(
            run_id=row["run_id"],
            url=row["url"],
            label=row["label"],
            author_id=row["author_id"],
            namespace=row["namespace"],
            retry_count=int(row["retry_count"]),
            errors=[str(e) for e in errors] if isinstance(errors, list) else [],
            failed_at=row["failed_at"],
        )


class SQLiteStateStore:
    """
    SQLite-backed crawl state: run metadata, the aggregated author -> record mapping,
    and the requests that ran out of retries.

    Records are kept as opaque JSON objects; shaping them is the caller's job.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStateStore":
        target = str(path)
        if target != ":memory:":
            Path(target).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(target)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {target}: {e}") from e

        try:
            initialize_sqlite(conn)
        except sqlite3.DatabaseError as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStateStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def _query(self, what: str, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read {what}: {e}") from e

    # runs

    def create_run(
        self,
        *,
        config_hash: str,
        versions: Mapping[str, str] | None = None,
        run_id: str | None = None,
        started_at: str | None = None,
    ) -> RunRecord:
        rid = _required(run_id or uuid.uuid4().hex, "run_id")
        cfg_hash = _required(config_hash, "config_hash")

        try:
            with self._conn:
                self._conn.execute(
                    f"INSERT OR IGNORE INTO runs({_RUN_COLUMNS}) VALUES (?, ?, NULL, ?, ?)",
                    (rid, (started_at or _now()).strip(), cfg_hash, _encode(dict(versions or {}))),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create run record: {e}") from e

        run = self.get_run(rid)
        if run is None:
            raise StorageError(f"Run {rid} is missing right after insert")
        return run

    def finish_run(self, run_id: str, *, ended_at: str | None = None) -> None:
        rid = _required(run_id, "run_id")
        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE runs SET ended_at = ? WHERE run_id = ?",
                    ((ended_at or _now()).strip(), rid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish run: {e}") from e

    def get_run(self, run_id: str) -> RunRecord | None:
        rid = _required(run_id, "run_id")
        rows = self._query("run", f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ?", (rid,))
        return RunRecord.from_row(rows[0]) if rows else None

    def latest_run(self) -> RunRecord | None:
        rows = self._query(
            "runs", f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY started_at DESC LIMIT 1"
        )
        return RunRecord.from_row(rows[0]) if rows else None

    def latest_unfinished_run(self, *, config_hash: str | None = None) -> RunRecord | None:
        """Most recent run with no end time, optionally restricted to one config hash."""
        where = ["ended_at IS NULL"]
        params: list[Any] = []
        if _optional(config_hash):
            where.append("config_hash = ?")
            params.append(_optional(config_hash))

        rows = self._query(
            "runs",
            f"SELECT {_RUN_COLUMNS} FROM runs WHERE {' AND '.join(where)} "
            "ORDER BY started_at DESC LIMIT 1",
            params,
        )
        return RunRecord.from_row(rows[0]) if rows else None

    # aggregated posts

    def load_posts(self) -> dict[str, dict[str, Any]]:
        posts: dict[str, dict[str, Any]] = {}
        for row in self._query(
            "aggregated posts",
            "SELECT author_id, record_json FROM aggregated_posts ORDER BY author_id",
        ):
            author = row["author_id"]
            try:
                record = json.loads(row["record_json"] or "{}")
            except json.JSONDecodeError as e:
                raise StorageError(f"Stored record for author_id={author} is not valid JSON: {e}") from e
            if not isinstance(record, dict):
                raise StorageError(f"Stored record for author_id={author} is not an object")
            posts[author] = record
        return posts

    def save_posts(self, posts: Mapping[str, Mapping[str, Any]], *, saved_at: str | None = None) -> None:
        """Replace the whole persisted mapping with `posts` in one transaction; blank keys are skipped."""
        ts = (saved_at or _now()).strip()
        rows = [
            (key, _encode(dict(record)), ts)
            for key, record in ((str(k or "").strip(), v) for k, v in posts.items())
            if key
        ]
        try:
            with self._conn:
                self._conn.execute("DELETE FROM aggregated_posts")
                self._conn.executemany(
                    "INSERT INTO aggregated_posts(author_id, record_json, updated_at) VALUES (?, ?, ?)",
                    rows,
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to save aggregated posts: {e}") from e

    def post_count(self) -> int:
        return int(self._query("aggregated posts", "SELECT COUNT(*) FROM aggregated_posts")[0][0])

    # failed requests

    def record_failed_request(
        self,
        *,
        run_id: str,
        url: str,
        label: str,
        retry_count: int,
        errors: Iterable[str] = (),
        author_id: str | None = None,
        namespace: str | None = None,
        failed_at: str | None = None,
    ) -> None:
        """Insert or refresh the failure row keyed by (run_id, url, label). A known author is kept."""
        values = (
            _required(run_id, "run_id"),
            _required(url, "url"),
            _required(label, "label"),
            _optional(author_id),
            _optional(namespace),
            int(retry_count),
            _encode([str(e) for e in errors]),
            (failed_at or _now()).strip(),
        )
        try:
            with self._conn:
                self._conn.execute(
                    f"""
                    INSERT INTO failed_requests({_FAILED_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(run_id, url, label) DO UPDATE SET
                      author_id = COALESCE(excluded.author_id, failed_requests.author_id),
                      namespace = excluded.namespace,
                      retry_count = excluded.retry_count,
                      errors_json = excluded.errors_json,
                      failed_at = excluded.failed_at
                    """,
                    values,
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Cannot record failed request for unknown run {values[0]}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to record failed request: {e}") from e

    def failed_requests(self, *, run_id: str | None = None) -> list[FailedRequestRecord]:
        sql = f"SELECT {_FAILED_COLUMNS} FROM failed_requests"
        params: list[Any] = []
        if _optional(run_id):
            sql += " WHERE run_id = ?"
            params.append(_optional(run_id))
        rows = self._query("failed requests", sql + " ORDER BY id", params)
        return [FailedRequestRecord.from_row(r) for r in rows]
