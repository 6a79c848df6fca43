"""Database schema DDL for coach jobs."""

COACH_JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS coach_jobs (
  id                 UUID PRIMARY KEY,
  owner_id           TEXT NOT NULL,
  kind               TEXT NOT NULL CHECK (kind IN ('session', 'period')),

  session_ref        TEXT,
  period_start       DATE,
  period_end         DATE,

  status             TEXT NOT NULL DEFAULT 'pending'
                     CHECK (status IN ('pending', 'processing', 'done', 'failed')),
  attempts           INT NOT NULL DEFAULT 0 CHECK (attempts >= 0),
  next_run_at        TIMESTAMPTZ NOT NULL DEFAULT now(),

  last_error         TEXT,
  result             JSONB,

  notification_sent  BOOLEAN NOT NULL DEFAULT FALSE,
  notification_ref   TEXT,

  created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
  completed_at       TIMESTAMPTZ,

  CONSTRAINT coach_jobs_dedup_key CHECK (
    (kind = 'session' AND session_ref IS NOT NULL)
    OR (kind = 'period' AND period_end IS NOT NULL)
  )
);

-- Dedup key for session jobs; also the ON CONFLICT target of enqueue
CREATE UNIQUE INDEX IF NOT EXISTS uq_coach_jobs_session_ref
ON coach_jobs (session_ref);

-- Dedup key for period jobs
CREATE UNIQUE INDEX IF NOT EXISTS uq_coach_jobs_owner_period_end
ON coach_jobs (owner_id, period_end)
WHERE kind = 'period';

-- Claim-next scans live rows oldest first
CREATE INDEX IF NOT EXISTS idx_coach_jobs_live_created
ON coach_jobs (created_at)
WHERE status IN ('pending', 'processing');

CREATE INDEX IF NOT EXISTS idx_coach_jobs_owner_kind
ON coach_jobs (owner_id, kind, created_at DESC);
"""


async def apply_schema(db_pool) -> None:
    """Create the coach_jobs table and its indexes if they do not exist."""
    async with db_pool.acquire() as conn:
        await conn.execute(COACH_JOBS_TABLE_DDL)
