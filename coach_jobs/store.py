"""Database store layer for coach jobs."""

import json
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from coach_jobs.errors import JobNotFoundError, LeaseLostError
from coach_jobs.models import ClaimResult, ClaimStatus, Job, JobKind, JobStatus

EXHAUSTED_LEASE_ERROR = (
    "ExhaustionError: no attempts left to reclaim the job after its lease expired"
)


class JobStore:
    """Database layer for coach job operations.

    Every write that follows a claim is a compare-and-swap on
    (status = 'processing', attempts = <claimed attempts>), so a claimant that
    lost its lease to a stale reclaim cannot overwrite the newer outcome.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_session_job(
        self,
        id: UUID,
        owner_id: str,
        session_ref: str,
        now: datetime,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> UUID:
        """
        Insert a session job, or touch the existing one for this session.

        Touching leaves status and attempts alone and never moves updated_at
        on a processing row, since that column is the lease clock.
        """
        async with self.db_pool.acquire() as conn:
            job_id = await conn.fetchval(
                """
                INSERT INTO coach_jobs (
                    id, owner_id, kind, session_ref, period_start, period_end,
                    status, attempts, next_run_at, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, 0, $8, $8, $8)
                ON CONFLICT (session_ref)
                DO UPDATE SET updated_at = CASE
                    WHEN coach_jobs.status = 'processing' THEN coach_jobs.updated_at
                    ELSE EXCLUDED.updated_at
                END
                RETURNING id
                """,
                id,
                owner_id,
                JobKind.SESSION.value,
                session_ref,
                period_start,
                period_end,
                JobStatus.PENDING.value,
                now,
            )
        return job_id

    async def find_period_job_id(self, owner_id: str, period_end: date) -> Optional[UUID]:
        """Find the period job for an owner and period end, if any."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT id FROM coach_jobs
                WHERE owner_id = $1 AND kind = $2 AND period_end = $3
                ORDER BY created_at DESC
                LIMIT 1
                """,
                owner_id,
                JobKind.PERIOD.value,
                period_end,
            )

    async def insert_period_job(
        self,
        id: UUID,
        owner_id: str,
        period_end: date,
        now: datetime,
        period_start: Optional[date] = None,
    ) -> UUID:
        """
        Insert a period job.

        Raises asyncpg.UniqueViolationError when a concurrent enqueue already
        created the row for (owner_id, period_end).
        """
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO coach_jobs (
                    id, owner_id, kind, session_ref, period_start, period_end,
                    status, attempts, next_run_at, created_at, updated_at
                ) VALUES ($1, $2, $3, NULL, $4, $5, $6, 0, $7, $7, $7)
                RETURNING id
                """,
                id,
                owner_id,
                JobKind.PERIOD.value,
                period_start,
                period_end,
                JobStatus.PENDING.value,
                now,
            )

    async def get_job(self, job_id: UUID, owner_id: Optional[str] = None) -> Job:
        """Get a job by ID, optionally scoped to its owner."""
        async with self.db_pool.acquire() as conn:
            if owner_id is None:
                row = await conn.fetchrow(
                    "SELECT * FROM coach_jobs WHERE id = $1", job_id
                )
            else:
                row = await conn.fetchrow(
                    "SELECT * FROM coach_jobs WHERE id = $1 AND owner_id = $2",
                    job_id,
                    owner_id,
                )

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def get_job_by_session(self, owner_id: str, session_ref: str) -> Optional[Job]:
        """Get the job for a session."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM coach_jobs
                WHERE owner_id = $1 AND session_ref = $2
                ORDER BY created_at DESC
                LIMIT 1
                """,
                owner_id,
                session_ref,
            )
        return self._row_to_job(row) if row else None

    async def get_latest_period_job(
        self, owner_id: str, done_only: bool = True
    ) -> Optional[Job]:
        """Get the owner's period job with the latest period end."""
        query = """
            SELECT * FROM coach_jobs
            WHERE owner_id = $1 AND kind = $2
        """
        params: list[Any] = [owner_id, JobKind.PERIOD.value]
        if done_only:
            query += " AND status = $3"
            params.append(JobStatus.DONE.value)
        query += " ORDER BY period_end DESC NULLS LAST, created_at DESC LIMIT 1"

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)
        return self._row_to_job(row) if row else None

    async def find_recent_period_job_id(
        self, owner_id: str, since: datetime
    ) -> Optional[UUID]:
        """Find a period job for the owner created at or after `since`."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT id FROM coach_jobs
                WHERE owner_id = $1 AND kind = $2 AND created_at >= $3
                ORDER BY created_at DESC
                LIMIT 1
                """,
                owner_id,
                JobKind.PERIOD.value,
                since,
            )

    async def claim_job_by_id(
        self,
        job_id: UUID,
        now: datetime,
        stale_before: datetime,
        max_attempts: int,
        force: bool = False,
    ) -> ClaimResult:
        """
        Claim a single job by ID in one short transaction.

        The row is locked with FOR UPDATE so a concurrent claimer waits for
        this transaction and then sees the updated status.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM coach_jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if not row:
                    return ClaimResult(ClaimStatus.NOT_FOUND)

                job = self._row_to_job(row)
                if job.status.is_terminal:
                    return ClaimResult(ClaimStatus.TERMINAL, job)

                if job.status == JobStatus.PROCESSING:
                    if not job.is_lease_stale(now, now - stale_before):
                        return ClaimResult(ClaimStatus.IN_FLIGHT, job)
                    if job.attempts >= max_attempts:
                        row = await conn.fetchrow(
                            """
                            UPDATE coach_jobs
                            SET status = $2,
                                last_error = $3,
                                updated_at = $4,
                                completed_at = $4
                            WHERE id = $1
                            RETURNING *
                            """,
                            job_id,
                            JobStatus.FAILED.value,
                            EXHAUSTED_LEASE_ERROR,
                            now,
                        )
                        return ClaimResult(ClaimStatus.TERMINAL, self._row_to_job(row))
                elif not force and job.next_run_at > now:
                    return ClaimResult(ClaimStatus.NOT_DUE, job)

                row = await conn.fetchrow(
                    """
                    UPDATE coach_jobs
                    SET status = $2,
                        attempts = LEAST(attempts + 1, $3),
                        updated_at = $4
                    WHERE id = $1
                    RETURNING *
                    """,
                    job_id,
                    JobStatus.PROCESSING.value,
                    max_attempts,
                    now,
                )

        return ClaimResult(ClaimStatus.CLAIMED, self._row_to_job(row))

    async def claim_next_job(
        self, now: datetime, stale_before: datetime, max_attempts: int
    ) -> Optional[Job]:
        """
        Atomically claim the oldest eligible job.

        Eligible means pending and due, or processing with an expired lease,
        in both cases with attempts left. FOR UPDATE SKIP LOCKED makes
        concurrent claimers pick different rows instead of waiting.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE coach_jobs
                SET status = $1,
                    attempts = attempts + 1,
                    updated_at = $2
                WHERE id = (
                    SELECT id FROM coach_jobs
                    WHERE attempts < $5
                      AND (
                        (status = $4 AND next_run_at <= $2)
                        OR (status = $1 AND updated_at < $3)
                      )
                    ORDER BY created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.PROCESSING.value,
                now,
                stale_before,
                JobStatus.PENDING.value,
                max_attempts,
            )

        return self._row_to_job(row) if row else None

    async def fail_exhausted_jobs(
        self, now: datetime, stale_before: datetime, max_attempts: int
    ) -> int:
        """
        Fail jobs that would be eligible for a claim but have no attempts left.

        Returns the number of jobs failed.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE coach_jobs
                SET status = $1,
                    last_error = $2,
                    updated_at = $3,
                    completed_at = $3
                WHERE id IN (
                    SELECT id FROM coach_jobs
                    WHERE attempts >= $6
                      AND (
                        (status = $4 AND updated_at < $5)
                        OR (status = $7 AND next_run_at <= $3)
                      )
                    FOR UPDATE SKIP LOCKED
                )
                """,
                JobStatus.FAILED.value,
                EXHAUSTED_LEASE_ERROR,
                now,
                JobStatus.PROCESSING.value,
                stale_before,
                max_attempts,
                JobStatus.PENDING.value,
            )
        return _affected_rows(result)

    async def mark_done(
        self, job_id: UUID, attempts: int, result: dict[str, Any], now: datetime
    ) -> None:
        """Mark a claimed job as done with its result."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE coach_jobs
                SET status = $3,
                    result = $4::jsonb,
                    last_error = NULL,
                    updated_at = $5,
                    completed_at = $5
                WHERE id = $1 AND status = $6 AND attempts = $2
                """,
                job_id,
                attempts,
                JobStatus.DONE.value,
                json.dumps(result),
                now,
                JobStatus.PROCESSING.value,
            )
        if _affected_rows(status) == 0:
            raise LeaseLostError(job_id, attempts)

    async def mark_retry(
        self,
        job_id: UUID,
        attempts: int,
        error: str,
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        """Put a claimed job back to pending until next_run_at."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE coach_jobs
                SET status = $3,
                    last_error = $4,
                    next_run_at = $5,
                    updated_at = $6
                WHERE id = $1 AND status = $7 AND attempts = $2
                """,
                job_id,
                attempts,
                JobStatus.PENDING.value,
                error,
                next_run_at,
                now,
                JobStatus.PROCESSING.value,
            )
        if _affected_rows(status) == 0:
            raise LeaseLostError(job_id, attempts)

    async def mark_failed(
        self, job_id: UUID, attempts: int, error: str, now: datetime
    ) -> None:
        """Mark a claimed job as permanently failed."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE coach_jobs
                SET status = $3,
                    last_error = $4,
                    updated_at = $5,
                    completed_at = $5
                WHERE id = $1 AND status = $6 AND attempts = $2
                """,
                job_id,
                attempts,
                JobStatus.FAILED.value,
                error,
                now,
                JobStatus.PROCESSING.value,
            )
        if _affected_rows(status) == 0:
            raise LeaseLostError(job_id, attempts)

    async def mark_notified(
        self, job_id: UUID, notification_ref: Optional[str], now: datetime
    ) -> bool:
        """Record a delivered notification for a done job."""
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE coach_jobs
                SET notification_sent = true,
                    notification_ref = $2,
                    updated_at = $3
                WHERE id = $1 AND status = $4
                """,
                job_id,
                notification_ref,
                now,
                JobStatus.DONE.value,
            )
        return _affected_rows(status) > 0

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            kind=JobKind(row["kind"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            next_run_at=row["next_run_at"],
            session_ref=row["session_ref"],
            period_start=row["period_start"],
            period_end=row["period_end"],
            last_error=row["last_error"],
            result=json.loads(row["result"])
            if row["result"] and isinstance(row["result"], str)
            else row["result"],
            notification_sent=row["notification_sent"],
            notification_ref=row["notification_ref"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )


def _affected_rows(command_status: Optional[str]) -> int:
    """Extract the row count from a status string like "UPDATE 5"."""
    if not command_status:
        return 0
    try:
        return int(command_status.split()[-1])
    except ValueError:
        return 0
