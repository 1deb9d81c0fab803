from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from apify_client import ApifyClientAsync
from apify_client.errors import ApifyApiError

from .errors import ApifyError
from .retry import AsyncSleepFn, OnRetryFn, RetryConfig, call_with_retries_async

T = TypeVar("T")

# No jitter and no Retry-After cap, close to what the Apify client does on its own.
_DEFAULT_APIFY_RETRY = RetryConfig(
    max_attempts=9,
    base_delay_seconds=0.5,
    max_delay_seconds=20.0,
    jitter_ratio=0.0,
    retry_after_cap_seconds=0.0,
)

_PUSH_BATCH_SIZE = 500

_STATUS_ATTRS = ("status_code", "statusCode", "status", "http_status", "httpStatusCode")
_NETWORK_HINTS = ("timeout", "connect")


def _status_code(exc: BaseException) -> int | None:
    for attr in _STATUS_ATTRS:
        try:
            return int(getattr(exc, attr))
        except (AttributeError, TypeError, ValueError):
            continue
    return None


def _is_network_failure(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    where = f"{type(exc).__module__}.{type(exc).__name__}".casefold()
    return any(hint in where for hint in _NETWORK_HINTS)


def is_retryable_apify_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """Retry HTTP 429, HTTP 5xx and network failures; everything else fails at once."""
    if isinstance(exc, ApifyApiError):
        code = _status_code(exc)
        if code is None:
            return False, None, "http_status"
        return code == 429 or code >= 500, None, f"http_{code}"
    if _is_network_failure(exc):
        return True, None, "network_error"
    return False, None, None


def _chunked(values: Sequence[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(values[i : i + size]) for i in range(0, len(values), size)]


class _ApifyResource:
    def __init__(
        self,
        token: str,
        *,
        client: ApifyClientAsync | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: AsyncSleepFn | None = None,
    ) -> None:
        self._retry = retry or _DEFAULT_APIFY_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

        if client is not None:
            self._client = client
        else:
            # Disable client-level retries so we can apply our own policy uniformly.
            self._client = ApifyClientAsync(token=token, max_retries=0)

    async def _call(self, fn: Callable[[], Awaitable[T]], *, operation: str) -> T:
        try:
            return await call_with_retries_async(
                fn,
                cfg=self._retry,
                is_retryable=is_retryable_apify_exception,
                operation=operation,
                on_retry=self._on_retry,
                sleep_fn=self._sleep_fn,
            )
        except ApifyApiError as e:
            raise ApifyError(f"Apify call failed ({operation}): {e}") from e
        except Exception as e:
            raise ApifyError(f"Unexpected error during Apify call ({operation}): {e}") from e


class ApifyKeyValueStateBackend(_ApifyResource):
    """
    Aggregation Store backend kept in one record of an Apify key-value store.

    The record value is the whole author -> record mapping as a JSON object.
    """

    def __init__(
        self,
        token: str,
        *,
        store_name: str | None = None,
        key: str = "STATE",
        client: ApifyClientAsync | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: AsyncSleepFn | None = None,
    ) -> None:
        super().__init__(token, client=client, retry=retry, on_retry=on_retry, sleep_fn=sleep_fn)
        self._store_name = (store_name or "").strip() or None
        self._key = (key or "").strip() or "STATE"
        self._store_id: str | None = None

    async def _resolve_store_id(self) -> str:
        if self._store_id is not None:
            return self._store_id

        async def _do_get_or_create() -> Any:
            return await self._client.key_value_stores().get_or_create(name=self._store_name)

        store = await self._call(
            _do_get_or_create,
            operation=f"apify.key_value_stores.get_or_create:{self._store_name or 'default'}",
        )
        store_id = str((store or {}).get("id") or "").strip()
        if not store_id:
            raise ApifyError(f"Apify key-value store response missing id: {store}")
        self._store_id = store_id
        return store_id

    async def load_posts(self) -> dict[str, dict[str, Any]]:
        store_id = await self._resolve_store_id()

        async def _do_get() -> Any:
            return await self._client.key_value_store(store_id).get_record(self._key)

        record = await self._call(_do_get, operation=f"apify.key_value_store.get_record:{self._key}")
        if record is None:
            return {}

        value = record.get("value") if isinstance(record, dict) else None
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ApifyError(f"Apify state record {self._key} is not a JSON object")

        return {str(k): dict(v) for k, v in value.items() if isinstance(v, dict)}

    async def save_posts(self, posts: Mapping[str, Mapping[str, Any]]) -> None:
        store_id = await self._resolve_store_id()
        payload = {str(k): dict(v) for k, v in posts.items()}

        async def _do_set() -> Any:
            return await self._client.key_value_store(store_id).set_record(
                self._key,
                payload,
                content_type="application/json",
            )

        await self._call(_do_set, operation=f"apify.key_value_store.set_record:{self._key}")


class ApifyDatasetSink(_ApifyResource):
    """Pushes flattened dataset items to a named (or the run's default) Apify dataset."""

    def __init__(
        self,
        token: str,
        *,
        dataset_name: str | None = None,
        client: ApifyClientAsync | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: AsyncSleepFn | None = None,
    ) -> None:
        super().__init__(token, client=client, retry=retry, on_retry=on_retry, sleep_fn=sleep_fn)
        self._dataset_name = (dataset_name or "").strip() or None

    async def push_items(self, items: Sequence[dict[str, Any]]) -> int:
        if not items:
            return 0

        async def _do_get_or_create() -> Any:
            return await self._client.datasets().get_or_create(name=self._dataset_name)

        dataset = await self._call(
            _do_get_or_create,
            operation=f"apify.datasets.get_or_create:{self._dataset_name or 'default'}",
        )
        dataset_id = str((dataset or {}).get("id") or "").strip()
        if not dataset_id:
            raise ApifyError(f"Apify dataset response missing id: {dataset}")

        pushed = 0
        for batch in _chunked(items, _PUSH_BATCH_SIZE):

            async def _do_push(batch: list[dict[str, Any]] = batch) -> Any:
                return await self._client.dataset(dataset_id).push_items(batch)

            await self._call(_do_push, operation=f"apify.dataset.push_items:{dataset_id}")
            pushed += len(batch)

        return pushed
