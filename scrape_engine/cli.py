"""Command-line entry point: enqueue jobs, run a worker, inspect the queue."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from scrape_engine.browser.navigation import PlaywrightNavigator
from scrape_engine.browser.pool import SessionPool
from scrape_engine.browser.session import PlaywrightSessionFactory
from scrape_engine.config import Settings, settings as default_settings
from scrape_engine.errors import InvalidJobSpec
from scrape_engine.logging_config import setup_logging
from scrape_engine.metrics import start_metrics_server
from scrape_engine.parser.extractor import ProductCardExtractor
from scrape_engine.queue.backend import create_backend
from scrape_engine.queue.models import JobOptions, JobSpec
from scrape_engine.queue.producer import JobProducer, enqueue_entries, load_bulk_file
from scrape_engine.scraper.auto_scroll import ContentLoader
from scrape_engine.scraper.product_scraper import ProductScraper
from scrape_engine.worker.worker import ScrapeWorker

logger = logging.getLogger(__name__)


def build_worker(settings: Settings) -> ScrapeWorker:
    """Wire the production worker: Redis/memory queue, Playwright pool, scraper."""
    navigator = PlaywrightNavigator(settings)
    pool = SessionPool(PlaywrightSessionFactory(settings), settings.max_concurrency, settings)
    scraper = ProductScraper(
        navigator,
        ProductCardExtractor(),
        ContentLoader(navigator, settings),
        settings,
    )
    return ScrapeWorker(create_backend(settings), pool, scraper, settings)


async def cmd_enqueue(args: argparse.Namespace, settings: Settings) -> int:
    producer = JobProducer(settings=settings)
    try:
        job_id = await producer.enqueue(
            JobSpec(keyword=args.keyword, url=args.url, max_pages=args.pages),
            JobOptions(priority=args.priority, delay_ms=args.delay),
        )
        print(f"Job enqueued: {job_id}")
        print(json.dumps(await producer.counts(), indent=2))
        return 0
    finally:
        await producer.close()


async def cmd_enqueue_bulk(args: argparse.Namespace, settings: Settings) -> int:
    entries = load_bulk_file(args.file)
    producer = JobProducer(settings=settings)
    try:
        ids = await enqueue_entries(producer, entries)
        print(f"Bulk enqueued {len(ids)} jobs")
        print(json.dumps(await producer.counts(), indent=2))
        return 0
    finally:
        await producer.close()


async def cmd_counts(args: argparse.Namespace, settings: Settings) -> int:
    producer = JobProducer(settings=settings)
    try:
        print(json.dumps(await producer.counts(), indent=2))
        return 0
    finally:
        await producer.close()


async def cmd_retry(args: argparse.Namespace, settings: Settings) -> int:
    producer = JobProducer(settings=settings)
    try:
        return 0 if await producer.retry_job(args.job_id) else 1
    finally:
        await producer.close()


async def cmd_clean(args: argparse.Namespace, settings: Settings) -> int:
    producer = JobProducer(settings=settings)
    try:
        print(json.dumps(await producer.clean_old_jobs(), indent=2))
        return 0
    finally:
        await producer.close()


async def cmd_worker(args: argparse.Namespace, settings: Settings) -> int:
    metrics_port = args.metrics_port if args.metrics_port is not None else settings.metrics_port
    if metrics_port:
        start_metrics_server(metrics_port)
        logger.info(f"Metrics exposed on port {metrics_port}")

    worker = build_worker(settings)

    if args.dry_run:
        logger.info("Dry run: initializing pool and checking the queue")
        try:
            await worker.pool.initialize()
            latency = await worker.backend.ping()
            counts = await worker.backend.counts()
            logger.info(f"Queue reachable ({latency:.1f}ms): {counts}")
            logger.info(f"Pool status: {worker.pool.status()}")
        finally:
            await worker.stop()
        return 0

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: _request_stop(worker, s))
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda s, _frame: loop.call_soon_threadsafe(_request_stop, worker, s))

    await worker.start()
    await worker.wait_closed()
    return 0


def _request_stop(worker: ScrapeWorker, sig: int) -> None:
    logger.info(f"Received {signal.Signals(sig).name}, shutting down")
    asyncio.ensure_future(worker.stop())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrape-engine",
        description="Queue-driven product listing scraper",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    enqueue = sub.add_parser("enqueue", help="Add a single scrape job")
    target = enqueue.add_mutually_exclusive_group(required=True)
    target.add_argument("--keyword", "-k", help="Search keyword to scrape")
    target.add_argument("--url", "-u", help="Direct URL to scrape")
    enqueue.add_argument("--pages", "-p", type=int, help="Maximum pages to scrape")
    enqueue.add_argument("--priority", type=int, default=0, help="Job priority (lower = sooner)")
    enqueue.add_argument("--delay", type=int, default=0, help="Delay before processing (ms)")
    enqueue.set_defaults(handler=cmd_enqueue)

    bulk = sub.add_parser("enqueue-bulk", help="Add jobs from a JSON file")
    bulk.add_argument("file", help='JSON file: {"jobs": [{"keyword": ..., "maxPages": ...}, ...]}')
    bulk.set_defaults(handler=cmd_enqueue_bulk)

    worker = sub.add_parser("worker", help="Run a worker")
    worker.add_argument("--dry-run", action="store_true", help="Initialize, check the queue, then exit")
    worker.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    worker.set_defaults(handler=cmd_worker)

    counts = sub.add_parser("counts", help="Show job counts per state")
    counts.set_defaults(handler=cmd_counts)

    retry = sub.add_parser("retry", help="Move a failed job back to waiting")
    retry.add_argument("job_id")
    retry.set_defaults(handler=cmd_retry)

    clean = sub.add_parser("clean", help="Remove finished jobs past retention")
    clean.set_defaults(handler=cmd_clean)

    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or default_settings
    if args.log_level:
        settings = settings.model_copy(update={"log_level": args.log_level})
    setup_logging(settings=settings)

    try:
        return asyncio.run(args.handler(args, settings))
    except InvalidJobSpec as e:
        logger.error(f"Invalid job: {e}")
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
