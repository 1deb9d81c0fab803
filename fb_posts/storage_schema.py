from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

# (version, statements). Versions are applied in order and never edited once released.
_MIGRATIONS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (
        1,
        (
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              started_at TEXT NOT NULL,
              ended_at TEXT,
              config_hash TEXT NOT NULL,
              versions_json TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS aggregated_posts (
              author_id TEXT PRIMARY KEY,
              record_json TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """,
        ),
    ),
    (
        2,
        (
            """
            CREATE TABLE IF NOT EXISTS failed_requests (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
              url TEXT NOT NULL,
              label TEXT NOT NULL,
              author_id TEXT,
              namespace TEXT,
              retry_count INTEGER NOT NULL,
              errors_json TEXT NOT NULL,
              failed_at TEXT NOT NULL,
              UNIQUE (run_id, url, label)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_failed_requests_run ON failed_requests(run_id)",
            "CREATE INDEX IF NOT EXISTS idx_failed_requests_namespace ON failed_requests(namespace)",
        ),
    ),
)

SCHEMA_VERSION = _MIGRATIONS[-1][0]


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """Configure `conn` and bring its schema up to SCHEMA_VERSION. Safe to call on every open."""
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        # In-memory and read-only databases keep their journal mode.
        pass

    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
    done = {int(row[0]) for row in conn.execute("SELECT version FROM schema_migrations")}

    for version, statements in _MIGRATIONS:
        if version in done:
            continue
        with conn:
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )
