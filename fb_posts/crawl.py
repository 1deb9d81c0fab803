from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from .aggregation import AggregationStore, StateBackend
from .apify_platform import ApifyDatasetSink, ApifyKeyValueStateBackend
from .config import RuntimeSecrets, config_sha256
from .config_schema import AppConfig
from .dataset import build_dataset_items, is_complete, utc_now_iso, write_jsonl
from .engine import BrowserCrawler, CrawlStats, RequestTask
from .failure_report import build_failure_report
from .models import PostRecord, RequestLabel
from .orchestrator import PostCrawlHandler, video_follow_up
from .run_log import RunLogger
from .storage import SQLiteStateStore
from .urls import classify_url


class Crawler(Protocol):
    async def run(self, tasks: Iterable[RequestTask] = ()) -> CrawlStats: ...


class DatasetSink(Protocol):
    async def push_items(self, items: Sequence[dict[str, Any]]) -> int: ...


CrawlerFactory = Callable[..., Crawler]


@dataclass(frozen=True)
class SeedPlan:
    tasks: list[RequestTask]
    unrecognized: list[str] = field(default_factory=list)
    skipped_complete: list[str] = field(default_factory=list)
    resumed_videos: int = 0


@dataclass(frozen=True)
class CrawlResult:
    run_id: str
    resumed: bool
    seeds: int
    unrecognized: tuple[str, ...]
    skipped_complete: int
    stats: CrawlStats
    records: dict[str, PostRecord]
    failed: int
    dataset_path: Path
    pushed: int
    report: dict[str, Any]


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


def _residential_warning(config: AppConfig, logger: RunLogger) -> None:
    if not config.proxy.residential:
        logger.warning(
            "proxy_not_residential",
            groups=list(config.proxy.groups),
            message="Not using the RESIDENTIAL proxy group; expect blocks and captchas.",
        )


def build_seed_tasks(
    start_urls: Sequence[str],
    snapshot: Mapping[str, PostRecord],
    *,
    logger: RunLogger | None = None,
) -> SeedPlan:
    """
    Classify start URLs into POST tasks, skipping authors whose record is already complete.

    Records still carrying a pending video link get their VIDEO task back instead.
    """
    tasks: list[RequestTask] = []
    keys: set[str] = set()
    unrecognized: list[str] = []
    skipped: list[str] = []
    resumed_videos = 0

    def _add(task: RequestTask) -> bool:
        if task.unique_key in keys:
            return False
        keys.add(task.unique_key)
        tasks.append(task)
        return True

    for raw in start_urls:
        c = classify_url(raw)
        if c.label not in (RequestLabel.POST, RequestLabel.PHOTO) or not c.author_id:
            unrecognized.append(raw)
            if logger is not None:
                logger.warning("start_url_unrecognized", url=raw, label=c.label.value)
            continue

        record = snapshot.get(c.author_id)
        if is_complete(record):
            skipped.append(c.author_id)
            if logger is not None:
                logger.info("start_url_already_complete", url=raw, author_id=c.author_id)
            continue
        if record is not None and record.pending_video_url and record.post_url is not None:
            # Post already written; only its video is resumed below.
            continue

        _add(
            RequestTask(
                url=c.canonical or c.url,
                label=RequestLabel.POST,
                author_id=c.author_id,
                canonical=c.canonical,
                use_mobile=False,
                ref=raw,
            )
        )

    for author_id, record in snapshot.items():
        if not record.pending_video_url or record.post_url is None:
            continue
        seed = RequestTask(
            url=record.post_url,
            label=RequestLabel.POST,
            author_id=author_id,
        )
        if _add(video_follow_up(seed, record.pending_video_url)):
            resumed_videos += 1

    return SeedPlan(
        tasks=tasks,
        unrecognized=unrecognized,
        skipped_complete=skipped,
        resumed_videos=resumed_videos,
    )


def state_backend_for(
    config: AppConfig,
    secrets: RuntimeSecrets,
    store: SQLiteStateStore,
) -> StateBackend:
    if config.apify.state_store_name is not None:
        return ApifyKeyValueStateBackend(
            secrets.apify_token or "",
            store_name=config.apify.state_store_name,
            key=config.apify.state_key,
        )
    return store


async def run_crawl_async(
    config: AppConfig,
    secrets: RuntimeSecrets,
    *,
    store: SQLiteStateStore,
    logger: RunLogger,
    out_dir: str | Path,
    fresh: bool = False,
    crawler_factory: CrawlerFactory | None = None,
    state_backend: StateBackend | None = None,
    dataset_sink: DatasetSink | None = None,
) -> CrawlResult:
    cfg_hash = config_sha256(config)
    previous = None if fresh else store.latest_unfinished_run(config_hash=cfg_hash)
    resumed = previous is not None

    if previous is not None:
        run_record = previous
    else:
        run_record = store.create_run(
            config_hash=cfg_hash,
            versions={
                "python": sys.version.split()[0],
                "crawlee": _pkg_version("crawlee"),
                "playwright": _pkg_version("playwright"),
                "apify-client": _pkg_version("apify-client"),
                "pydantic": _pkg_version("pydantic"),
            },
        )
    run_id = run_record.run_id
    logger.set_run_id(run_id)
    logger.info("crawl_started", resumed=resumed, config_hash=cfg_hash, start_urls=len(config.start_urls))
    _residential_warning(config, logger)

    backend = state_backend or state_backend_for(config, secrets, store)
    aggregation = AggregationStore(backend, logger=logger)
    if resumed:
        await aggregation.load()
    else:
        # A new run starts from an empty mapping.
        await aggregation.checkpoint(force=True)

    plan = build_seed_tasks(config.start_urls, aggregation.snapshot(), logger=logger)
    logger.info(
        "seeds_built",
        tasks=len(plan.tasks),
        unrecognized=len(plan.unrecognized),
        skipped_complete=len(plan.skipped_complete),
        resumed_videos=plan.resumed_videos,
    )

    handler = PostCrawlHandler(config, aggregation, logger=logger)

    def _on_failed(task: RequestTask, exc: BaseException) -> None:
        failed = handler.handle_failed_request(task, exc)
        store.record_failed_request(
            run_id=run_id,
            url=failed.url,
            label=failed.label,
            retry_count=failed.retry_count,
            errors=failed.errors,
            author_id=failed.author_id,
            namespace=failed.namespace.value if failed.namespace is not None else None,
        )

    factory = crawler_factory or BrowserCrawler
    crawler = factory(
        config,
        request_handler=handler,
        failed_request_handler=_on_failed,
        logger=logger,
    )

    checkpoints = asyncio.create_task(
        aggregation.run_periodic_checkpoints(config.crawler.checkpoint_interval_secs)
    )
    try:
        stats = await crawler.run(plan.tasks)
    finally:
        checkpoints.cancel()
        await asyncio.gather(checkpoints, return_exceptions=True)
        await aggregation.checkpoint(force=True)

    logger.info(
        "crawl_finished",
        handled=stats.handled,
        failed=stats.failed,
        retries=stats.retries,
        sessions_retired=stats.sessions_retired,
        posts=handler.counters.posts,
        videos=handler.counters.videos,
        videos_resolved=handler.counters.videos_resolved,
        blocked=dict(handler.counters.blocked),
    )

    records = aggregation.snapshot()
    items = build_dataset_items(records, finished_at=utc_now_iso())
    dataset_path = write_jsonl(items, Path(out_dir) / config.output.dataset_file)
    logger.info("dataset_written", path=str(dataset_path), items=len(items))

    pushed = 0
    if config.apify.push_dataset:
        sink = dataset_sink or ApifyDatasetSink(
            secrets.apify_token or "",
            dataset_name=config.apify.dataset_name,
        )
        pushed = await sink.push_items(items)
        logger.info("dataset_pushed", items=pushed, dataset_name=config.apify.dataset_name)

    store.finish_run(run_id)

    failed = store.failed_requests(run_id=run_id)
    report = build_failure_report(
        failed,
        handled=stats.handled,
        records=len(records),
        pending_videos=sum(1 for r in records.values() if r.pending_video_url),
    )
    if report["severity"] == "error":
        logger.error("failure_report", **report)
    else:
        logger.info("failure_report", **report)

    _residential_warning(config, logger)

    return CrawlResult(
        run_id=run_id,
        resumed=resumed,
        seeds=len(plan.tasks),
        unrecognized=tuple(plan.unrecognized),
        skipped_complete=len(plan.skipped_complete),
        stats=stats,
        records=records,
        failed=len(failed),
        dataset_path=dataset_path,
        pushed=pushed,
        report=report,
    )


def run_crawl(
    config: AppConfig,
    secrets: RuntimeSecrets,
    *,
    store: SQLiteStateStore,
    logger: RunLogger,
    out_dir: str | Path,
    fresh: bool = False,
    crawler_factory: CrawlerFactory | None = None,
    state_backend: StateBackend | None = None,
    dataset_sink: DatasetSink | None = None,
) -> CrawlResult:
    return asyncio.run(
        run_crawl_async(
            config,
            secrets,
            store=store,
            logger=logger,
            out_dir=out_dir,
            fresh=fresh,
            crawler_factory=crawler_factory,
            state_backend=state_backend,
            dataset_sink=dataset_sink,
        )
    )


async def load_records(
    config: AppConfig,
    secrets: RuntimeSecrets,
    *,
    store: SQLiteStateStore,
    logger: RunLogger | None = None,
    state_backend: StateBackend | None = None,
) -> dict[str, PostRecord]:
    """Read the persisted author -> record mapping without crawling."""
    backend = state_backend or state_backend_for(config, secrets, store)
    aggregation = AggregationStore(backend, logger=logger)
    await aggregation.load()
    return aggregation.snapshot()
