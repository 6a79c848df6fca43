"""CLI entrypoint and programmatic interface for the coach job worker."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import asyncpg

from coach_jobs.config import CoachJobsConfig
from coach_jobs.ddl import apply_schema
from coach_jobs.service import CoachJobService
from coach_jobs.worker import run_worker_loop, run_worker_tick


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: CoachJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=1, max_size=10)


async def run_worker(
    config: Optional[CoachJobsConfig] = None,
    db_pool=None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    interval_seconds: Optional[float] = None,
    batch_size: Optional[int] = None,
    once: bool = False,
    apply_ddl: bool = False,
) -> int:
    """
    Run the worker programmatically.

    Args:
        config: CoachJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
        interval_seconds: Override the configured poll interval.
        batch_size: Override the configured batch size.
        once: Run a single tick and return instead of looping.
        apply_ddl: Create the coach_jobs table before starting.

    Returns:
        Number of jobs executed when once is set, otherwise 0.

    Example:
        ```python
        import asyncio
        from coach_jobs.worker_main import run_worker

        asyncio.run(run_worker(batch_size=4))
        ```
    """
    if config is None:
        config = CoachJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        if apply_ddl:
            logger.info("Applying coach_jobs schema...")
            await apply_schema(db_pool)

        service = CoachJobService(config, db_pool, logger=logger)
        if not service.generation_available:
            logger.warning("OPENAI_API_KEY is not set, ticks will be skipped")

        if once:
            return await run_worker_tick(
                service, logger, batch_size or config.batch_size
            )

        await run_worker_loop(
            service,
            logger,
            interval_seconds=interval_seconds,
            batch_size=batch_size,
            shutdown_event=shutdown_event,
        )
        return 0
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Coach Jobs Worker")
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Base poll interval in seconds (default: COACH_JOBS_INTERVAL_SECONDS or 25)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Max jobs per tick (default: COACH_JOBS_BATCH_SIZE or 2)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Create the coach_jobs table before starting",
    )

    args = parser.parse_args()

    try:
        config = CoachJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    # Setup shutdown event
    shutdown_event = asyncio.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    async def run():
        """Async main function."""
        try:
            logger.info("Starting coach job worker...")
            executed = await run_worker(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                interval_seconds=args.interval_seconds,
                batch_size=args.batch_size,
                once=args.once,
                apply_ddl=args.apply_schema,
            )
            if args.once:
                logger.info(f"Single tick executed {executed} jobs")
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
