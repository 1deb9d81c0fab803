from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Sequence

from .config import load_config, resolve_runtime_secrets
from .crawl import load_records, run_crawl
from .dataset import build_dataset_items, write_jsonl
from .errors import ApifyError, ConfigError, ExportError, StorageError
from .export_excel import export_dataset_workbook
from .failure_report import format_failure_report
from .run_log import RunLogger
from .storage import SQLiteStateStore
from .urls import classify_url


def _add_config_and_out(parser: argparse.ArgumentParser, *, out_help: str) -> None:
    parser.add_argument("--config", required=True, help="Path to YAML config file.")
    parser.add_argument("--out", required=True, help=out_help)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fb_posts",
        description="Crawl post pages and their videos into an aggregated dataset.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Crawl the configured post URLs and write the dataset.")
    _add_config_and_out(run, out_help="Output directory for state, logs and dataset files.")
    run.add_argument(
        "--fresh",
        action="store_true",
        help="Start a new run instead of resuming an unfinished one.",
    )
    run.set_defaults(_handler=_cmd_run)

    classify = commands.add_parser(
        "classify", help="Print the label, author and canonical permalink of each URL."
    )
    classify.add_argument("urls", nargs="+", help="URLs to classify.")
    classify.set_defaults(_handler=_cmd_classify)

    export = commands.add_parser(
        "export", help="Rebuild dataset outputs from the persisted state without crawling."
    )
    _add_config_and_out(export, out_help="Output directory holding state.sqlite.")
    export.set_defaults(_handler=_cmd_export)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_summary(**values: object) -> None:
    for key, value in values.items():
        if isinstance(value, bool):
            value = str(value).lower()
        print(f"{key}={value}")


def _cmd_classify(args: argparse.Namespace) -> int:
    unrecognized = 0
    for url in args.urls:
        c = classify_url(url)
        if not c.recognized:
            unrecognized += 1
        print(f"{c.label.value}\t{c.author_id or '-'}\t{c.canonical or '-'}\t{c.url}")
    return 0 if unrecognized == 0 else 4


def _cmd_run(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    with RunLogger.open(log_path, overwrite=False, echo=sys.stderr) as log:
        log.info(
            "run_command_started",
            config_path=str(args.config),
            out_dir=str(out_dir),
            fresh=bool(args.fresh),
        )

        try:
            cfg = load_config(args.config)
            if cfg.crawler.debug_log:
                log.set_min_level("DEBUG")
            secrets = resolve_runtime_secrets(cfg)

            log.info(
                "config_loaded",
                config_path=str(args.config),
                apify_enabled=cfg.apify.enabled,
                apify_token_env=cfg.apify.token_env,
            )

            db_path = out_dir / "state.sqlite"
            xlsx_path = out_dir / "dataset.xlsx"

            with SQLiteStateStore.open(db_path) as store:
                result = run_crawl(
                    cfg,
                    secrets,
                    store=store,
                    logger=log,
                    out_dir=out_dir,
                    fresh=bool(args.fresh),
                )

                if cfg.output.excel:
                    log.info("export_excel_started", path=str(xlsx_path))
                    export_dataset_workbook(cfg, store, result.records, xlsx_path, run_id=result.run_id)
                    log.info("export_excel_completed", path=str(xlsx_path))

            summary: dict[str, object] = dict(
                run_id=result.run_id,
                resumed=result.resumed,
                seeds=result.seeds,
                unrecognized=len(result.unrecognized),
                skipped_complete=result.skipped_complete,
                handled=result.stats.handled,
                retries=result.stats.retries,
                failed=result.failed,
                records=len(result.records),
                dataset=result.dataset_path,
            )
            if cfg.output.excel:
                summary["dataset_xlsx"] = xlsx_path
            _print_summary(**summary, run_log=log_path)

            if result.failed:
                _eprint(format_failure_report(result.report))
                return 4
            return 0
        except Exception as e:
            log.exception("run_command_failed", exc=e)
            raise


def _cmd_export(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    db_path = out_dir / "state.sqlite"
    if not db_path.exists():
        raise StorageError(f"No state database found: {db_path}")

    cfg = load_config(args.config)
    secrets = resolve_runtime_secrets(cfg)

    with SQLiteStateStore.open(db_path) as store:
        run = store.latest_run()
        if run is None:
            raise StorageError(f"No runs recorded in {db_path}")

        records = asyncio.run(load_records(cfg, secrets, store=store))
        items = build_dataset_items(records)
        dataset_path = write_jsonl(items, out_dir / cfg.output.dataset_file)
        _print_summary(run_id=run.run_id, records=len(records), dataset=dataset_path)

        if cfg.output.excel:
            xlsx_path = export_dataset_workbook(
                cfg, store, records, out_dir / "dataset.xlsx", run_id=run.run_id
            )
            _print_summary(dataset_xlsx=xlsx_path)

    return 0


_EXIT_CODES: tuple[tuple[type[BaseException] | tuple[type[BaseException], ...], int], ...] = (
    (ConfigError, 2),
    ((ApifyError, StorageError, ExportError), 3),
)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(None if argv is None else list(argv))

    try:
        return int(args._handler(args))
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        for kinds, code in _EXIT_CODES:
            if isinstance(e, kinds):
                _eprint(str(e))
                return code
        _eprint(f"Unexpected error: {e}")
        return 1
