"""
Integration tests for the coach job queue against a real PostgreSQL.

Runs in two modes:
1. With testcontainers (default) - spins up its own Postgres
2. With an external database (CI mode) - USE_EXTERNAL_SERVICES=true and
   COACH_JOBS_DB_DSN point at a disposable database
"""

import asyncio
import json
import logging
import os
import re
from datetime import timedelta
from uuid import uuid4

import asyncpg
import pytest
import pytest_asyncio

from coach_jobs.config import CoachJobsConfig
from coach_jobs.ddl import apply_schema
from coach_jobs.errors import CollaboratorError, JobNotFoundError, LeaseLostError
from coach_jobs.models import ClaimStatus, JobKind, JobStatus
from coach_jobs.notifier import NotificationReceipt
from coach_jobs.service import CoachJobService
from coach_jobs.timeutil import utc_now
from coach_jobs.worker import run_worker_tick

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

OWNER = "user-1"

APP_TABLES_DDL = """
CREATE TABLE IF NOT EXISTS users (
  id     TEXT PRIMARY KEY,
  tg_id  BIGINT
);
CREATE TABLE IF NOT EXISTS onboardings (
  user_id  TEXT NOT NULL,
  data     JSONB,
  summary  JSONB
);
CREATE TABLE IF NOT EXISTS daily_check_ins (
  user_id            TEXT NOT NULL,
  created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  sleep_quality      TEXT,
  energy_level       TEXT,
  stress_level       TEXT,
  available_minutes  INT,
  pain               JSONB
);
CREATE TABLE IF NOT EXISTS workout_sessions (
  id           TEXT PRIMARY KEY,
  user_id      TEXT NOT NULL,
  finished_at  TIMESTAMPTZ,
  payload      JSONB
);
"""

FEEDBACK = json.dumps(
    {
        "message": {"bullets": ["Great depth on squats", "Rest a bit longer"]},
        "detail": {
            "title": "Leg day",
            "bullets": ["Great depth on squats", "Rest a bit longer"],
            "actions": [{"title": "Pause squats", "how": "3x5 with a 2s pause"}],
        },
    }
)

WORKOUT = {
    "title": "Legs",
    "exercises": [{"name": "Squat", "sets": [{"reps": 5, "weight": 100}]}],
}


class FakeGenerator:
    """Returns queued responses; exceptions in the queue are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def generate(self, instructions, payload):
        self.requests.append(payload)
        response = self.responses.pop(0) if self.responses else FEEDBACK
        if isinstance(response, Exception):
            raise response
        return response


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, destination, text, action_url=None, action_label=None):
        self.sent.append((destination, text, action_url))
        return NotificationReceipt(message_ref="555")


def use_external_services():
    return os.getenv("USE_EXTERNAL_SERVICES", "false").lower() == "true"


@pytest.fixture(scope="session")
def db_dsn():
    """DSN of a disposable database, from the environment or a container."""
    if use_external_services():
        yield os.environ["COACH_JOBS_DB_DSN"]
        return

    pytest.importorskip("testcontainers")
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:15")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")

    try:
        yield re.sub(r"^postgresql\+\w+://", "postgresql://", container.get_connection_url())
    finally:
        container.stop()


@pytest.fixture
def config(db_dsn):
    return CoachJobsConfig(
        db_dsn=db_dsn,
        openai_api_key="sk-test",
        webapp_url="https://app.example.com",
    )


@pytest_asyncio.fixture
async def db_pool(db_dsn):
    """Create a database pool and reset the schema."""
    pool = await asyncpg.create_pool(db_dsn, min_size=2, max_size=10)
    await apply_schema(pool)
    async with pool.acquire() as conn:
        await conn.execute(APP_TABLES_DDL)
        await conn.execute(
            "TRUNCATE coach_jobs, users, onboardings, daily_check_ins, workout_sessions"
        )
        await conn.execute("INSERT INTO users (id, tg_id) VALUES ($1, 42)", OWNER)
        await conn.execute(
            "INSERT INTO onboardings (user_id, data) VALUES ($1, $2::jsonb)",
            OWNER,
            json.dumps({"goal": "strength", "schedule": {"daysPerWeek": 3}}),
        )

    yield pool

    await pool.close()


async def add_workout(pool, session_ref, finished_at):
    async with pool.acquire() as conn:
        await conn.execute(
            """
            INSERT INTO workout_sessions (id, user_id, finished_at, payload)
            VALUES ($1, $2, $3, $4::jsonb)
            """,
            session_ref,
            OWNER,
            finished_at,
            json.dumps(WORKOUT),
        )


def make_service(config, db_pool, generator=None, notifier=None):
    return CoachJobService(
        config,
        db_pool,
        generator=generator or FakeGenerator(),
        notifier=notifier,
        logger=logger,
    )


@pytest.mark.asyncio
async def test_session_enqueue_is_deduplicated(config, db_pool):
    service = make_service(config, db_pool)

    first = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    second = await service.enqueue(owner_id=OWNER, kind="session", session_ref="s-1")

    assert first == second
    async with db_pool.acquire() as conn:
        count = await conn.fetchval("SELECT COUNT(*) FROM coach_jobs")
    assert count == 1

    snapshot = await service.get_job(OWNER, first)
    assert snapshot.status == JobStatus.PENDING
    assert snapshot.attempts == 0
    assert snapshot.next_run_at <= utc_now()


@pytest.mark.asyncio
async def test_reenqueue_does_not_reset_claimed_job(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    claimed = await service.claim_next()

    again = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    assert again == job_id
    job = await service.store.get_job(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 1
    assert job.updated_at == claimed.updated_at



@pytest.mark.asyncio
async def test_reenqueue_touches_pending_job(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    async with db_pool.acquire() as conn:
        await conn.execute(
            "UPDATE coach_jobs SET updated_at = now() - interval '1 hour' WHERE id = $1",
            job_id,
        )
    before = await service.store.get_job(job_id)

    again = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    assert again == job_id
    job = await service.store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.next_run_at == before.next_run_at
    assert job.updated_at > before.updated_at


@pytest.mark.asyncio
async def test_get_job_is_scoped_to_owner(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    with pytest.raises(JobNotFoundError):
        await service.get_job("someone-else", job_id)


@pytest.mark.asyncio
async def test_process_session_job_inline(config, db_pool):
    await add_workout(db_pool, "s-1", utc_now() - timedelta(hours=1))
    generator = FakeGenerator(FEEDBACK)
    notifier = FakeNotifier()
    service = make_service(config, db_pool, generator, notifier)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    outcome = await service.process_job(job_id)

    assert outcome.status == JobStatus.DONE
    assert outcome.executed
    snapshot = await service.get_by_session(OWNER, "s-1")
    assert snapshot.status == JobStatus.DONE
    assert snapshot.attempts == 1
    assert snapshot.result["detail"]["title"] == "Leg day"
    assert snapshot.notification_sent
    assert snapshot.notification_ref == "555"
    assert notifier.sent[0][0] == "42"
    assert notifier.sent[0][2] == "https://app.example.com/workout/result?sessionId=s-1"
    assert generator.requests[0]["input"]["user"]["goal"] == "strength"

    again = await service.process_job(job_id)
    assert again.status == JobStatus.DONE
    assert not again.executed
    assert len(generator.requests) == 1


@pytest.mark.asyncio
async def test_failed_attempt_is_rescheduled_with_backoff(config, db_pool):
    await add_workout(db_pool, "s-1", utc_now() - timedelta(hours=1))
    service = make_service(
        config, db_pool, FakeGenerator(CollaboratorError("upstream timeout"))
    )
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    before = utc_now()

    outcome = await service.process_job(job_id)

    assert outcome.status == JobStatus.PENDING
    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.PENDING
    assert snapshot.attempts == 1
    assert "upstream timeout" in snapshot.last_error
    assert snapshot.next_run_at >= before + timedelta(seconds=45)

    assert await service.claim_next() is None
    claim = await service.claim_by_id(job_id)
    assert claim.status == ClaimStatus.NOT_DUE



@pytest.mark.asyncio
async def test_failed_job_is_claimed_again_once_due(config, db_pool):
    await add_workout(db_pool, "s-1", utc_now() - timedelta(hours=1))
    service = make_service(
        config, db_pool, FakeGenerator(CollaboratorError("upstream timeout"))
    )
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    await service.process_job(job_id)
    assert await service.claim_next() is None

    async with db_pool.acquire() as conn:
        await conn.execute(
            "UPDATE coach_jobs SET next_run_at = now() - interval '1 second' WHERE id = $1",
            job_id,
        )

    job = await service.claim_next()

    assert job is not None
    assert job.id == job_id
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 2
    assert "upstream timeout" in job.last_error


@pytest.mark.asyncio
async def test_missing_session_is_retried(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="nope")

    outcome = await service.process_job(job_id)

    assert outcome.status == JobStatus.PENDING
    assert outcome.error.startswith("PreconditionError")


@pytest.mark.asyncio
async def test_stale_lease_is_reclaimed_and_old_claimant_fenced(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    first = await service.claim_next()
    assert first.id == job_id
    assert first.attempts == 1
    assert await service.claim_next() is None

    async with db_pool.acquire() as conn:
        await conn.execute(
            "UPDATE coach_jobs SET updated_at = now() - interval '11 minutes' WHERE id = $1",
            job_id,
        )

    second = await service.claim_next()
    assert second.id == job_id
    assert second.attempts == 2

    with pytest.raises(LeaseLostError):
        await service.store.mark_done(job_id, first.attempts, {"late": True}, utc_now())

    await service.store.mark_done(job_id, second.attempts, {"ok": True}, utc_now())
    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.DONE
    assert snapshot.result == {"ok": True}


@pytest.mark.asyncio
async def test_in_flight_job_is_not_claimed_by_id(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    await service.claim_next()

    outcome = await service.process_job(job_id)

    assert outcome.status == JobStatus.PROCESSING
    assert not outcome.executed
    assert outcome.claim_status == ClaimStatus.IN_FLIGHT


@pytest.mark.asyncio
async def test_claim_by_id_reclaims_stale_lease(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    first = await service.claim_next()
    async with db_pool.acquire() as conn:
        await conn.execute(
            "UPDATE coach_jobs SET updated_at = now() - interval '11 minutes' WHERE id = $1",
            job_id,
        )

    claim = await service.claim_by_id(job_id)

    assert claim.status == ClaimStatus.CLAIMED
    assert claim.job.status == JobStatus.PROCESSING
    assert claim.job.attempts == first.attempts + 1
    assert claim.job.updated_at > first.updated_at


@pytest.mark.asyncio
async def test_claim_by_id_fails_exhausted_stale_job(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    async with db_pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE coach_jobs
            SET status = 'processing', attempts = $2,
                updated_at = now() - interval '11 minutes'
            WHERE id = $1
            """,
            job_id,
            config.max_attempts,
        )

    claim = await service.claim_by_id(job_id)

    assert claim.status == ClaimStatus.TERMINAL
    assert claim.job.status == JobStatus.FAILED
    assert claim.job.attempts == config.max_attempts
    assert claim.job.completed_at is not None
    assert claim.job.last_error.startswith("ExhaustionError")

    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_exhausted_stale_job_is_failed(config, db_pool):
    service = make_service(config, db_pool)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")
    async with db_pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE coach_jobs
            SET status = 'processing', attempts = $2,
                updated_at = now() - interval '11 minutes'
            WHERE id = $1
            """,
            job_id,
            config.max_attempts,
        )

    assert await service.claim_next() is None
    assert await service.fail_exhausted_jobs() == 1

    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.FAILED
    assert snapshot.attempts == config.max_attempts
    assert snapshot.last_error.startswith("ExhaustionError")


@pytest.mark.asyncio
async def test_attempts_never_exceed_max(config, db_pool):
    await add_workout(db_pool, "s-1", utc_now() - timedelta(hours=1))
    failures = [CollaboratorError("down") for _ in range(config.max_attempts + 2)]
    service = make_service(config, db_pool, FakeGenerator(*failures))
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    for _ in range(config.max_attempts + 2):
        await service.process_job(job_id)

    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.FAILED
    assert snapshot.attempts == config.max_attempts
    assert snapshot.last_error.startswith("ExhaustionError")


@pytest.mark.asyncio
async def test_concurrent_period_enqueue_creates_one_job(config, db_pool):
    service = make_service(config, db_pool)
    period_end = utc_now().date()

    ids = await asyncio.gather(
        *[
            service.enqueue(owner_id=OWNER, kind=JobKind.PERIOD, period_end=period_end)
            for _ in range(5)
        ]
    )

    assert len(set(ids)) == 1
    async with db_pool.acquire() as conn:
        count = await conn.fetchval("SELECT COUNT(*) FROM coach_jobs WHERE kind = 'period'")
    assert count == 1


@pytest.mark.asyncio
async def test_concurrent_claims_get_distinct_jobs(config, db_pool):
    service = make_service(config, db_pool)
    for i in range(4):
        await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref=f"s-{i}")

    claimed = await asyncio.gather(*[service.claim_next() for _ in range(4)])

    ids = [job.id for job in claimed if job is not None]
    assert ids
    assert len(ids) == len(set(ids))
    async with db_pool.acquire() as conn:
        processing = await conn.fetchval(
            "SELECT COUNT(*) FROM coach_jobs WHERE status = 'processing'"
        )
    assert processing == len(ids)


@pytest.mark.asyncio
async def test_period_report_flow(config, db_pool):
    now = utc_now()
    await add_workout(db_pool, "s-1", now - timedelta(days=2))

    service = make_service(config, db_pool, FakeGenerator(FEEDBACK))
    assert await service.maybe_enqueue_period_job(OWNER, now=now) is None

    await add_workout(db_pool, "s-2", now - timedelta(hours=1))
    job_id = await service.maybe_enqueue_period_job(OWNER, now=now)
    assert job_id is not None
    assert await service.maybe_enqueue_period_job(OWNER, now=now) is None

    assert await service.get_latest_by_period(OWNER) is None
    pending = await service.get_latest_by_period(OWNER, done_only=False)
    assert pending.id == job_id

    executed = await run_worker_tick(service, logger, batch_size=2)

    assert executed == 1
    latest = await service.get_latest_by_period(OWNER)
    assert latest.id == job_id
    assert latest.status == JobStatus.DONE
    assert latest.result["kind"] == "period"
    assert len(service.generator.requests[0]["input"]["sessions"]) == 2


@pytest.mark.asyncio
async def test_worker_tick_skipped_without_generation(db_dsn, db_pool):
    config = CoachJobsConfig(db_dsn=db_dsn)
    service = CoachJobService(config, db_pool, logger=logger)
    job_id = await service.enqueue(owner_id=OWNER, kind=JobKind.SESSION, session_ref="s-1")

    assert await run_worker_tick(service, logger, batch_size=2) == 0

    snapshot = await service.get_job(OWNER, job_id)
    assert snapshot.status == JobStatus.PENDING
    assert snapshot.attempts == 0
