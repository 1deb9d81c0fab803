from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union

from pydantic import ValidationError

from .errors import ApifyError, StorageError
from .models import PostRecord
from .run_log import RunLogger

MergeFn = Callable[[Union[PostRecord, None]], Union[PostRecord, Awaitable[PostRecord]]]


class StateBackend(Protocol):
    """
    Durable home of the author -> record mapping.

    Methods may be plain or coroutine functions: SQLite is synchronous, Apify is not.
    """

    def load_posts(self) -> Any: ...

    def save_posts(self, posts: Mapping[str, Mapping[str, Any]]) -> Any: ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AggregationStore:
    """
    Resumable author -> PostRecord mapping for one run.

    `write` and `append` are the only mutations. `append` holds a per-author lock for the
    whole read-merge-store sequence so concurrent merges for one author never lose an update.
    """

    def __init__(self, backend: StateBackend, *, logger: RunLogger | None = None) -> None:
        self._backend = backend
        self._logger = logger
        self._records: dict[str, PostRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._dirty = False
        self._checkpoint_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, author_id: object) -> bool:
        return author_id in self._records

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _lock_for(self, author_id: str) -> asyncio.Lock:
        lock = self._locks.get(author_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[author_id] = lock
        return lock

    async def load(self) -> int:
        """Replace the in-memory mapping with the persisted one. Returns the record count."""
        raw = await _maybe_await(self._backend.load_posts())
        records: dict[str, PostRecord] = {}
        for author_id, data in (raw or {}).items():
            try:
                records[str(author_id)] = PostRecord.from_json(data)
            except ValidationError as e:
                raise StorageError(f"Persisted record for author_id={author_id} is invalid: {e}") from e

        self._records = records
        self._dirty = False
        if self._logger is not None:
            self._logger.info("aggregation_loaded", records=len(records))
        return len(records)

    async def write(self, author_id: str, record: PostRecord) -> None:
        """Insert or wholesale-replace the record of `author_id`."""
        key = _require_author(author_id)
        async with self._lock_for(key):
            self._records[key] = record
            self._dirty = True
        if self._logger is not None:
            self._logger.debug("aggregation_write", author_id=key)

    async def append(self, author_id: str, merge_fn: MergeFn) -> PostRecord:
        """Merge into the current record of `author_id` (None when absent) and store the result."""
        key = _require_author(author_id)
        async with self._lock_for(key):
            current = self._records.get(key)
            merged = await _maybe_await(merge_fn(current))
            if not isinstance(merged, PostRecord):
                raise TypeError("merge function must return a PostRecord")
            self._records[key] = merged
            self._dirty = True
        if self._logger is not None:
            self._logger.debug("aggregation_append", author_id=key)
        return merged

    def get(self, author_id: str) -> PostRecord | None:
        return self._records.get(author_id)

    def snapshot(self) -> dict[str, PostRecord]:
        """Deep copy of the current mapping, safe to read while workers keep merging."""
        return {k: v.model_copy(deep=True) for k, v in self._records.items()}

    async def checkpoint(self, *, force: bool = False) -> bool:
        """Persist the whole mapping. Skipped when nothing changed since the last checkpoint."""
        async with self._checkpoint_lock:
            if not self._dirty and not force:
                return False

            # Clear before the save so writes racing with it mark the store dirty again.
            self._dirty = False
            payload = {k: v.to_json() for k, v in self._records.items()}
            try:
                await _maybe_await(self._backend.save_posts(payload))
            except BaseException:
                self._dirty = True
                raise

        if self._logger is not None:
            self._logger.info("aggregation_checkpoint", records=len(payload))
        return True

    async def run_periodic_checkpoints(self, interval_secs: float) -> None:
        """Checkpoint every `interval_secs` until cancelled. A non-positive interval returns at once."""
        if interval_secs <= 0:
            return
        while True:
            await asyncio.sleep(interval_secs)
            try:
                await self.checkpoint()
            except (StorageError, ApifyError) as e:
                if self._logger is not None:
                    self._logger.exception("aggregation_checkpoint_failed", exc=e, level="WARN")


def _require_author(author_id: str) -> str:
    key = (author_id or "").strip()
    if not key:
        raise ValueError("author_id must be non-empty")
    return key
