from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from typing import Awaitable, Callable, List

from ..config import CrawlerConfig
from ..engine import COMPLETED, FAILED, PARTIAL_SUCCESS, STOPPED, CrawlerEngine, CrawlOutcome
from ..export.base import exporter_for
from ..gaps import GapDetector, MissingDataAnalyzer
from ..progress import CrawlProgress, ProgressChannel
from ..storage.sqlalchemy_sink import SQLAlchemySink
from ..utils.logging import setup_logging

logger = logging.getLogger(__name__)

EXIT_CODES = {COMPLETED: 0, PARTIAL_SUCCESS: 0, FAILED: 1, STOPPED: 130}


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Matter certified-product catalog crawler")
    p.add_argument("--config", type=str, help="Path to config JSON", default=None)
    p.add_argument("--log-level", type=str, default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--crawler-type", type=str, default=None,
                   help="Fetch backend: http, browser, or a dotted module:ClassName path")
    p.add_argument("--database-url", type=str, default=None, help="SQLAlchemy database URL")
    p.add_argument("--page-range-limit", type=int, default=None, help="Max pages per run (0 = no cap)")
    p.add_argument("--batch-size", type=int, default=None, help="Pages per batch")
    p.add_argument("--concurrency", type=int, default=None, help="Concurrent list/detail fetches")
    p.add_argument("--no-batches", action="store_true", help="Disable batch processing")
    p.add_argument("--no-save", action="store_true", help="Do not write results to the database")

    sub = p.add_subparsers(dest="command")

    crawl = sub.add_parser("crawl", help="Incremental crawl (default)")
    crawl.add_argument("--pages", type=str, default=None,
                       help='Explicit site pages instead of the planned range, e.g. "1~12, 34"')

    sub.add_parser("status", help="Compare site and store product counts")

    gaps = sub.add_parser("gaps", help="Report or re-crawl holes in the stored page grid")
    gaps.add_argument("--collect", action="store_true", help="Re-crawl the pages behind the gaps")

    missing = sub.add_parser("missing", help="Report or fetch products without detail rows")
    missing.add_argument("--collect", action="store_true", help="Fetch the missing details")

    export = sub.add_parser("export", help="Write stored product details to JSON or CSV")
    export.add_argument("--output", type=str, default=None, help="Output file path (.json or .csv)")

    serve = sub.add_parser("serve", help="Run the REST API server")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="API host")
    serve.add_argument("--port", type=int, default=8000, help="API port")
    return p


def _load_config(args: argparse.Namespace) -> CrawlerConfig:
    if args.config:
        cfg = CrawlerConfig.from_file(args.config)
    else:
        cfg = CrawlerConfig.from_env()

    cfg = cfg.with_overrides(
        crawler_type=args.crawler_type,
        database_url=args.database_url,
        page_range_limit=args.page_range_limit,
        batch_size=args.batch_size,
        initial_concurrency=args.concurrency,
        detail_concurrency=args.concurrency,
        output_path=getattr(args, "output", None),
    )
    if args.no_batches:
        cfg.enable_batch_processing = False
    if args.no_save:
        cfg.auto_add_to_local_db = False

    cfg.validate()
    return cfg


def run_server(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("matter_crawler.apis.app:app", host=host, port=port)


def _log_progress(progress: CrawlProgress) -> None:
    batch = f" [batch {progress.current_batch}/{progress.total_batches}]" if progress.current_batch else ""
    logger.info("%s%s %.1f%% %s", progress.stage, batch, progress.percentage, progress.message)


def _run_engine(engine: CrawlerEngine, job: Callable[[], Awaitable[CrawlOutcome]]) -> CrawlOutcome:
    async def _run() -> CrawlOutcome:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.stop)
        except NotImplementedError:
            # Windows: Ctrl+C falls back to KeyboardInterrupt.
            pass
        return await job()

    return asyncio.run(_run())


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def run_cli(argv: List[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.log_level)
    command = args.command or "crawl"

    if command == "serve":
        run_server(args.host, args.port)
        return 0

    cfg = _load_config(args)
    sink = SQLAlchemySink(cfg.database_url)
    try:
        if command == "export":
            products = sink.list_details()
            exporter_for(cfg.output_path).export(products, cfg.output_path)
            logger.info("Exported %s products to %s", len(products), cfg.output_path)
            return 0

        if command == "gaps" and not args.collect:
            _print(GapDetector(sink).detect(cfg.products_per_page).to_dict())
            return 0

        if command == "missing" and not args.collect:
            _print(MissingDataAnalyzer(sink).analyze(cfg.products_per_page).to_dict())
            return 0

        progress = ProgressChannel()
        progress.subscribe(_log_progress)
        engine = CrawlerEngine(cfg, sink, progress=progress)

        if command == "status":
            status = asyncio.run(engine.check_crawling_status(force=True))
            _print(status.to_dict())
            return 0

        if command == "gaps":
            outcome = _run_engine(engine, engine.collect_gaps)
        elif command == "missing":
            outcome = _run_engine(engine, engine.collect_missing_details)
        elif getattr(args, "pages", None):
            outcome = _run_engine(engine, lambda: engine.crawl_pages(args.pages))
        else:
            outcome = _run_engine(engine, engine.start_crawling)

        _print(outcome.to_dict())
        for line in outcome.recommendations:
            logger.info("Recommendation: %s", line)
        return EXIT_CODES.get(outcome.status, 1)
    finally:
        sink.close()


def main() -> int:
    import sys

    return run_cli(sys.argv[1:])
