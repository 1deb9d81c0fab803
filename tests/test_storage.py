from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fb_posts.errors import StorageError
from fb_posts.storage import SQLiteStateStore
from fb_posts.storage_schema import SCHEMA_VERSION


class TestSQLiteStateStore(unittest.TestCase):
    def test_schema_is_migrated(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            row = store.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
            self.assertEqual(int(row[0]), SCHEMA_VERSION)

    def test_runs_lifecycle(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            self.assertIsNone(store.latest_run())

            first = store.create_run(
                config_hash="hash1",
                versions={"python": "3.x"},
                run_id="run_a",
                started_at="2025-01-01T00:00:00+00:00",
            )
            self.assertIsNone(first.ended_at)
            self.assertEqual(first.versions, {"python": "3.x"})

            store.create_run(
                config_hash="hash2",
                run_id="run_b",
                started_at="2025-01-02T00:00:00+00:00",
            )

            self.assertEqual(store.latest_unfinished_run().run_id, "run_b")  # type: ignore[union-attr]
            self.assertEqual(
                store.latest_unfinished_run(config_hash="hash1").run_id,  # type: ignore[union-attr]
                "run_a",
            )

            store.finish_run("run_a", ended_at="2025-01-03T00:00:00+00:00")
            self.assertIsNone(store.latest_unfinished_run(config_hash="hash1"))
            self.assertEqual(store.get_run("run_a").ended_at, "2025-01-03T00:00:00+00:00")  # type: ignore[union-attr]
            self.assertEqual(store.latest_run().run_id, "run_b")  # type: ignore[union-attr]

    def test_create_run_validates_inputs(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            with self.assertRaises(ValueError):
                store.create_run(config_hash=" ")
            with self.assertRaises(ValueError):
                store.finish_run("")

    def test_posts_are_replaced_wholesale(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            store.save_posts({"a": {"postUrl": "https://p/1"}, "b": {"postUrl": "https://p/2"}})
            self.assertEqual(store.post_count(), 2)

            store.save_posts({"b": {"postUrl": "https://p/3"}, "": {"ignored": True}})
            self.assertEqual(store.load_posts(), {"b": {"postUrl": "https://p/3"}})

    def test_corrupt_record_raises(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            with store.conn:
                store.conn.execute(
                    "INSERT INTO aggregated_posts(author_id, record_json, updated_at) VALUES (?, ?, ?)",
                    ("a", "{not json", "2025-01-01T00:00:00+00:00"),
                )
            with self.assertRaises(StorageError):
                store.load_posts()

    def test_failed_requests_upsert(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            store.create_run(config_hash="hash1", run_id="run_a")

            store.record_failed_request(
                run_id="run_a",
                url="https://www.facebook.com/someone/posts/1",
                label="POST",
                retry_count=3,
                errors=["first"],
                author_id="someone",
                namespace="captcha",
            )
            store.record_failed_request(
                run_id="run_a",
                url="https://www.facebook.com/someone/posts/1",
                label="POST",
                retry_count=10,
                errors=["first", "second"],
                namespace="captcha",
            )
            store.record_failed_request(
                run_id="run_a",
                url="https://m.facebook.com/someone/videos/9/",
                label="VIDEO",
                retry_count=10,
            )

            rows = store.failed_requests(run_id="run_a")
            self.assertEqual(len(rows), 2)
            self.assertEqual(rows[0].retry_count, 10)
            self.assertEqual(rows[0].errors, ["first", "second"])
            self.assertEqual(rows[0].author_id, "someone")
            self.assertEqual(rows[0].namespace, "captcha")
            self.assertIsNone(rows[1].namespace)
            self.assertEqual(store.failed_requests(run_id="other"), [])

    def test_failed_request_needs_existing_run(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            with self.assertRaises(StorageError):
                store.record_failed_request(run_id="nope", url="https://x", label="POST", retry_count=0)

    def test_state_survives_reopen(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "nested" / "state.sqlite"
            with SQLiteStateStore.open(db_path) as store:
                store.create_run(config_hash="hash1", run_id="run_a")
                store.save_posts({"a": {"postUrl": "https://p/1"}})

            with SQLiteStateStore.open(db_path) as store:
                self.assertEqual(store.latest_unfinished_run().run_id, "run_a")  # type: ignore[union-attr]
                self.assertEqual(store.load_posts(), {"a": {"postUrl": "https://p/1"}})


if __name__ == "__main__":
    unittest.main()
