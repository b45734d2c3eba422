"""CLI entrypoint and programmatic interface for worker."""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Any, Optional

import asyncpg

from studio_jobs.config import StudioJobsConfig
from studio_jobs.ddl import SCHEMA_DDL
from studio_jobs.registry import JobRegistry, job_registry
from studio_jobs.upstream import UpstreamAIClient
from studio_jobs.worker import run_worker_loop

DEFAULT_HANDLERS_MODULE = "studio_jobs.handlers"


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: StudioJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


async def init_schema(db_pool) -> None:
    """Create tables and seed system config. Safe to run repeatedly."""
    async with db_pool.acquire() as conn:
        await conn.execute(SCHEMA_DDL)


def load_handlers(handlers_module: Optional[str] = None):
    """Load task handlers; the built-in handlers unless a module is configured."""
    handlers_module = (
        handlers_module
        or os.getenv("STUDIO_JOBS_HANDLERS_MODULE")
        or DEFAULT_HANDLERS_MODULE
    )
    importlib.import_module(handlers_module)
    logging.info(f"Loaded handlers from {handlers_module}")


async def run_worker(
    config: Optional[StudioJobsConfig] = None,
    db_pool=None,
    registry: Optional[JobRegistry] = None,
    upstream: Any = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    handlers_module: Optional[str] = None,
    create_schema: bool = False,
):
    """
    Run the worker programmatically.

    Args:
        config: StudioJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: JobRegistry instance. If None, will use global job_registry.
        upstream: AI client for handlers. If None, built from config.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        handlers_module: Module path to load handlers from.
        create_schema: Run the DDL before starting.

    Example:
        ```python
        from studio_jobs import run_worker, StudioJobsConfig
        import asyncio

        asyncio.run(run_worker(config=StudioJobsConfig.from_env()))
        ```
    """
    if config is None:
        config = StudioJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if registry is None:
        registry = job_registry

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    load_handlers(handlers_module)

    if upstream is None:
        upstream = UpstreamAIClient.from_config(config, logger)

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        if create_schema:
            await init_schema(db_pool)
        await run_worker_loop(
            config=config,
            db_pool=db_pool,
            registry=registry,
            logger=logger,
            upstream=upstream,
            shutdown_event=shutdown_event,
        )
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Studio Jobs Worker")
    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Jobs processed at once (default: STUDIO_JOBS_WORKER_MAX_CONCURRENT or 4)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between polls when idle (default: 2)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create tables before starting",
    )

    args = parser.parse_args()

    try:
        config = StudioJobsConfig.from_env()
        upstream = UpstreamAIClient.from_config(config, logger)
    except ValueError as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    if args.max_concurrent is not None:
        config.worker_max_concurrent = args.max_concurrent
    if args.poll_interval is not None:
        config.worker_poll_interval_seconds = args.poll_interval

    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info("Starting studio jobs worker...")
            await run_worker(
                config=config,
                registry=job_registry,
                upstream=upstream,
                logger=logger,
                shutdown_event=shutdown_event,
                create_schema=args.init_schema,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
