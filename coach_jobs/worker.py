"""Worker loop that polls the job store for due coach jobs."""

import asyncio
import logging
import random
from typing import Optional

from coach_jobs.service import CoachJobService


def calculate_poll_delay(
    interval_seconds: float,
    jitter_pct: float,
    min_interval_seconds: float = 0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Calculate the sleep before the next tick.

    Applies symmetric uniform jitter of +/- jitter_pct around the interval so
    that several workers started together drift apart.
    """
    uniform = (rng or random).uniform
    jitter = interval_seconds * jitter_pct * uniform(-1.0, 1.0)
    return max(min_interval_seconds, interval_seconds + jitter)


async def run_worker_tick(
    service: CoachJobService,
    logger: logging.Logger,
    batch_size: int,
) -> int:
    """
    Run one tick: claim and execute up to batch_size jobs.

    Stops at the first empty claim. Returns the number of jobs executed.
    """
    if not service.generation_available:
        logger.debug("Generation service is not configured, skipping tick")
        return 0

    try:
        await service.fail_exhausted_jobs()
    except Exception as e:
        logger.error(f"Error failing exhausted jobs: {str(e)}", exc_info=True)

    executed = 0
    for _ in range(batch_size):
        try:
            job = await service.claim_next()
        except Exception as e:
            logger.error(f"Error claiming next job: {str(e)}", exc_info=True)
            break

        if job is None:
            logger.debug("No due jobs")
            break

        try:
            await service.executor.execute(job)
        except Exception as e:
            logger.error(f"Job {job.id} crashed the executor: {str(e)}", exc_info=True)
        executed += 1

    return executed


async def run_worker_loop(
    service: CoachJobService,
    logger: logging.Logger,
    interval_seconds: Optional[float] = None,
    batch_size: Optional[int] = None,
    jitter_pct: Optional[float] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    rng: Optional[random.Random] = None,
) -> None:
    """
    Run the worker loop until shutdown_event is set.

    Args:
        service: Coach job service bound to the store and collaborators
        logger: Logger instance
        interval_seconds: Base time between ticks (defaults to config)
        batch_size: Maximum jobs executed per tick (defaults to config)
        jitter_pct: Symmetric jitter applied to the interval (defaults to config)
        shutdown_event: Optional event to signal shutdown
        rng: Random source for jitter
    """
    config = service.config
    interval_seconds = config.interval_seconds if interval_seconds is None else interval_seconds
    batch_size = config.batch_size if batch_size is None else batch_size
    jitter_pct = config.jitter_pct if jitter_pct is None else jitter_pct
    shutdown_event = shutdown_event or asyncio.Event()

    logger.info(
        f"Starting coach job worker (interval={interval_seconds}s, "
        f"batch_size={batch_size}, jitter={jitter_pct:.0%})"
    )

    while not shutdown_event.is_set():
        delay = calculate_poll_delay(
            interval_seconds, jitter_pct, config.min_interval_seconds, rng
        )
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        if shutdown_event.is_set():
            break

        try:
            executed = await run_worker_tick(service, logger, batch_size)
            if executed:
                logger.info(f"Tick executed {executed} jobs")
        except Exception as e:
            logger.error(f"Error in worker loop: {str(e)}", exc_info=True)

    logger.info("Shutdown signal received, exiting worker loop")
