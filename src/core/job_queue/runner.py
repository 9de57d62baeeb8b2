"""Worker process entry point.

Usage:
    python -m src.core.job_queue.runner --create-schema
    jobs-worker --concurrency 10 --poll-interval 2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

import asyncpg

from src.core.config import Settings, get_settings
from src.core.job_queue.backends import PostgresJobStore
from src.core.job_queue.core import HandlerRegistry
from src.core.job_queue.handlers import register_builtin_handlers
from src.core.job_queue.queue import JobQueue
from src.core.job_queue.reaper import StaleJobReaper
from src.core.job_queue.retry import RetryPolicy
from src.core.job_queue.schema import ensure_schema
from src.core.job_queue.worker import Worker, WorkerConfig, setup_signal_handlers
from src.core.logging.structured import setup_logging
from src.core.tasks.scheduler import RecurringJobScheduler

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a background job worker")
    parser.add_argument("--database-url", default=None, help="Postgres DSN (default: DATABASE_URL)")
    parser.add_argument("--concurrency", type=int, default=None, help="Max jobs in flight")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls")
    parser.add_argument("--no-reaper", action="store_true", help="Do not recover stale jobs")
    parser.add_argument(
        "--create-schema", action="store_true", help="Create the jobs table if missing"
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: LOG_LEVEL)")
    return parser


def build_worker_config(args: argparse.Namespace, settings: Settings) -> WorkerConfig:
    config = WorkerConfig.from_settings(settings)
    if args.concurrency is not None:
        config.concurrency = args.concurrency
    if args.poll_interval is not None:
        config.poll_interval_seconds = args.poll_interval
    # Re-run field checks after CLI overrides.
    config.__post_init__()
    return config


async def run(args: argparse.Namespace, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    dsn = args.database_url or settings.DATABASE_URL

    pool = await asyncpg.create_pool(
        dsn,
        min_size=settings.DATABASE_MIN_CONNECTIONS,
        max_size=settings.DATABASE_MAX_CONNECTIONS,
    )
    try:
        if args.create_schema:
            await ensure_schema(pool, settings.JOBS_TABLE)

        store = PostgresJobStore(pool, settings.JOBS_TABLE)
        registry = HandlerRegistry()
        register_builtin_handlers(registry, settings)

        worker = Worker(
            store,
            registry,
            config=build_worker_config(args, settings),
            retry_policy=RetryPolicy.from_settings(settings),
        )
        scheduler = RecurringJobScheduler(JobQueue(store, settings.JOB_DEFAULT_MAX_ATTEMPTS))
        reaper = None if args.no_reaper else StaleJobReaper.from_settings(store, settings)

        setup_signal_handlers(worker, scheduler, reaper)

        await scheduler.start()
        if reaper is not None:
            await reaper.start()

        logger.info(f"Handlers registered: {', '.join(registry.job_types)}")
        await worker.start()
    finally:
        await pool.close()
        logger.info("Database pool closed")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        fmt=settings.LOG_FORMAT,
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
    )
    asyncio.run(run(args, settings))


if __name__ == "__main__":
    main()
