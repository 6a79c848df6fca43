"""High-level service layer for coach job operations."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID, uuid4

import asyncpg

from coach_jobs.config import CoachJobsConfig
from coach_jobs.context import PostgresContextProvider
from coach_jobs.errors import ConfigurationError
from coach_jobs.executor import JobExecutor
from coach_jobs.generation import GenerationClient
from coach_jobs.models import (
    ClaimResult,
    ClaimStatus,
    Job,
    JobKind,
    JobOutcome,
    JobSnapshot,
)
from coach_jobs.notifier import TelegramNotifier
from coach_jobs.store import JobStore
from coach_jobs.timeutil import day_bounds, to_date, utc_now

DateLike = Union[date, datetime, str, None]


class CoachJobService:
    """High-level API for coach job operations."""

    def __init__(
        self,
        config: CoachJobsConfig,
        db_pool: asyncpg.Pool,
        context: Optional[Any] = None,
        generator: Optional[Any] = None,
        notifier: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.context = context or PostgresContextProvider(db_pool)

        if generator is None and config.generation_configured:
            generator = GenerationClient.from_config(config)
        if notifier is None and config.notifications_configured:
            notifier = TelegramNotifier.from_config(config)
        self.generator = generator
        self.notifier = notifier

        self.executor = JobExecutor(
            config,
            self.store,
            self.context,
            generator=self.generator,
            notifier=self.notifier,
            logger=self.logger,
        )

    @property
    def generation_available(self) -> bool:
        return self.generator is not None

    async def enqueue(
        self,
        *,
        owner_id: str,
        kind: Union[JobKind, str],
        session_ref: Optional[str] = None,
        period_start: DateLike = None,
        period_end: DateLike = None,
    ) -> UUID:
        """
        Enqueue a coach job, or return the live job for the same dedup key.

        Args:
            owner_id: Subject the job is for
            kind: JobKind.SESSION or JobKind.PERIOD
            session_ref: Session the feedback is for (session jobs)
            period_start: First day of the period (period jobs, optional)
            period_end: Last day of the period (period jobs)

        Returns:
            UUID: The job ID

        Raises:
            ValueError: If the dedup key for the kind is missing or malformed
        """
        kind = JobKind(kind)
        start = to_date(period_start)
        end = to_date(period_end)
        now = utc_now()

        if kind == JobKind.SESSION:
            if not session_ref:
                raise ValueError("session_ref is required for session jobs")
            job_id = await self.store.insert_session_job(
                id=uuid4(),
                owner_id=owner_id,
                session_ref=session_ref,
                now=now,
                period_start=start,
                period_end=end,
            )
            self.logger.info(
                f"Enqueued session job {job_id} for owner {owner_id}, session {session_ref}"
            )
            return job_id

        if end is None:
            raise ValueError("period_end is required for period jobs")

        existing = await self.store.find_period_job_id(owner_id, end)
        if existing:
            self.logger.debug(f"Period job {existing} already exists for {owner_id}/{end}")
            return existing

        try:
            job_id = await self.store.insert_period_job(
                id=uuid4(),
                owner_id=owner_id,
                period_end=end,
                now=now,
                period_start=start,
            )
        except asyncpg.UniqueViolationError:
            # A concurrent enqueue won the race for this key
            job_id = await self.store.find_period_job_id(owner_id, end)
            if job_id is None:
                raise
            self.logger.debug(f"Period job {job_id} created concurrently for {owner_id}/{end}")
            return job_id

        self.logger.info(f"Enqueued period job {job_id} for owner {owner_id}, period end {end}")
        return job_id

    async def maybe_enqueue_period_job(
        self, owner_id: str, now: Optional[datetime] = None
    ) -> Optional[UUID]:
        """
        Enqueue the period report ending today if the owner is due for one.

        Skips owners who already got a period job within the throttle window,
        or who logged fewer than the minimum number of sessions in the period.
        """
        now = now or utc_now()
        throttle_since = now - timedelta(days=self.config.period_throttle_days)
        if await self.store.find_recent_period_job_id(owner_id, throttle_since):
            return None

        period_end = now.date()
        period_start = period_end - timedelta(days=self.config.period_days - 1)
        start, _ = day_bounds(period_start, period_end)
        count = await self.context.count_sessions_between(owner_id, start, now)
        if count < self.config.period_min_sessions:
            return None

        return await self.enqueue(
            owner_id=owner_id,
            kind=JobKind.PERIOD,
            period_start=period_start,
            period_end=period_end,
        )

    async def get_job(self, owner_id: str, job_id: UUID) -> JobSnapshot:
        """Get a job owned by owner_id. Raises JobNotFoundError."""
        job = await self.store.get_job(job_id, owner_id=owner_id)
        return JobSnapshot.from_job(job)

    async def get_by_session(self, owner_id: str, session_ref: str) -> Optional[JobSnapshot]:
        """Get the job for a session, if one was enqueued."""
        job = await self.store.get_job_by_session(owner_id, session_ref)
        return JobSnapshot.from_job(job) if job else None

    async def get_latest_by_period(
        self, owner_id: str, done_only: bool = True
    ) -> Optional[JobSnapshot]:
        """Get the owner's most recent period report."""
        job = await self.store.get_latest_period_job(owner_id, done_only=done_only)
        return JobSnapshot.from_job(job) if job else None

    async def claim_by_id(self, job_id: UUID, force: bool = False) -> ClaimResult:
        now = utc_now()
        return await self.store.claim_job_by_id(
            job_id,
            now=now,
            stale_before=now - self.config.stale_lease,
            max_attempts=self.config.max_attempts,
            force=force,
        )

    async def claim_next(self) -> Optional[Job]:
        now = utc_now()
        return await self.store.claim_next_job(
            now=now,
            stale_before=now - self.config.stale_lease,
            max_attempts=self.config.max_attempts,
        )

    async def fail_exhausted_jobs(self) -> int:
        """Fail jobs whose lease expired or which came due with no attempts left."""
        now = utc_now()
        count = await self.store.fail_exhausted_jobs(
            now=now,
            stale_before=now - self.config.stale_lease,
            max_attempts=self.config.max_attempts,
        )
        if count > 0:
            self.logger.warning(f"Failed {count} jobs with no attempts left")
        return count

    async def process_job(self, job_id: UUID) -> JobOutcome:
        """
        Claim a job by ID regardless of its next_run_at and execute it inline.

        Terminal jobs are returned as they are, and jobs held by another
        claimant are reported without being run.

        Raises:
            ConfigurationError: If the generation service is not configured;
                the job is left untouched
        """
        if not self.generation_available:
            raise ConfigurationError("Generation service is not configured")

        claim = await self.claim_by_id(job_id, force=True)
        if claim.status != ClaimStatus.CLAIMED:
            self.logger.info(f"Job {job_id} not claimed: {claim.status.value}")
            return JobOutcome.from_claim(claim, job_id)

        return await self.executor.execute(claim.job)

    async def process_next(self) -> bool:
        """
        Claim and execute the next eligible job.

        Returns True if a job was claimed. Claim errors propagate; execution
        errors are absorbed by the executor.
        """
        job = await self.claim_next()
        if job is None:
            return False
        await self.executor.execute(job)
        return True
