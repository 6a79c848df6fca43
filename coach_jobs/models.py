"""Data models for coach jobs."""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel


class JobKind(str, Enum):
    """Job kind values. Each kind has exactly one executor pipeline."""

    SESSION = "session"
    PERIOD = "period"


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


class ClaimStatus(str, Enum):
    """Outcome of a claim-by-id attempt."""

    CLAIMED = "claimed"
    TERMINAL = "terminal"
    IN_FLIGHT = "in_flight"
    NOT_DUE = "not_due"
    NOT_FOUND = "not_found"


class Job:
    """Represents a coach job record."""

    def __init__(
        self,
        id: UUID,
        owner_id: str,
        kind: JobKind,
        status: JobStatus,
        attempts: int,
        next_run_at: datetime,
        session_ref: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        last_error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        notification_sent: bool = False,
        notification_ref: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ):
        self.id = id
        self.owner_id = owner_id
        self.kind = JobKind(kind) if isinstance(kind, str) else kind
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.attempts = attempts
        self.next_run_at = next_run_at
        self.session_ref = session_ref
        self.period_start = period_start
        self.period_end = period_end
        self.last_error = last_error
        self.result = result
        self.notification_sent = notification_sent
        self.notification_ref = notification_ref
        self.created_at = created_at
        self.updated_at = updated_at
        self.completed_at = completed_at

    def is_lease_stale(self, now: datetime, stale_after: timedelta) -> bool:
        """Whether a processing job's lease has outlived the staleness window."""
        if self.status != JobStatus.PROCESSING:
            return False
        if self.updated_at is None:
            return True
        return self.updated_at < now - stale_after

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "session_ref": self.session_ref,
            "period_start": (
                self.period_start.isoformat() if self.period_start else None
            ),
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_error": self.last_error,
            "result": self.result,
            "notification_sent": self.notification_sent,
            "notification_ref": self.notification_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind.value}, "
            f"status={self.status.value}, attempts={self.attempts})"
        )


class JobSnapshot(BaseModel):
    """Read-only view of a job returned to pollers."""

    id: UUID
    kind: JobKind
    status: JobStatus
    attempts: int
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    notification_sent: bool = False
    notification_ref: Optional[str] = None
    session_ref: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    next_run_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSnapshot":
        return cls(
            id=job.id,
            kind=job.kind,
            status=job.status,
            attempts=job.attempts,
            last_error=job.last_error,
            result=job.result,
            notification_sent=job.notification_sent,
            notification_ref=job.notification_ref,
            session_ref=job.session_ref,
            period_start=job.period_start,
            period_end=job.period_end,
            next_run_at=job.next_run_at,
            updated_at=job.updated_at,
        )


class ClaimResult:
    """Result of claim-by-id: the claim status plus the row as last seen."""

    def __init__(self, status: ClaimStatus, job: Optional[Job] = None):
        self.status = status
        self.job = job

    @property
    def claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED

    def __repr__(self) -> str:
        return f"ClaimResult(status={self.status.value}, job={self.job!r})"


class JobOutcome:
    """What happened to a job after a claim and (possibly) an execution."""

    def __init__(
        self,
        job_id: UUID,
        status: JobStatus,
        attempts: int = 0,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        next_run_at: Optional[datetime] = None,
        executed: bool = False,
        superseded: bool = False,
        claim_status: Optional[ClaimStatus] = None,
    ):
        self.job_id = job_id
        self.status = status
        self.attempts = attempts
        self.result = result
        self.error = error
        self.next_run_at = next_run_at
        self.executed = executed
        self.superseded = superseded
        self.claim_status = claim_status

    @classmethod
    def from_claim(cls, claim: ClaimResult, job_id: UUID) -> "JobOutcome":
        """Outcome for a claim-by-id that did not hand over the job."""
        job = claim.job
        if job is None:
            return cls(
                job_id=job_id, status=JobStatus.PENDING, claim_status=claim.status
            )
        return cls(
            job_id=job.id,
            status=job.status,
            attempts=job.attempts,
            result=job.result,
            error=job.last_error,
            next_run_at=job.next_run_at,
            claim_status=claim.status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "status": self.status.value,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "executed": self.executed,
            "superseded": self.superseded,
            "claim_status": self.claim_status.value if self.claim_status else None,
        }

    def __repr__(self) -> str:
        return (
            f"JobOutcome(job_id={self.job_id}, status={self.status.value}, "
            f"attempts={self.attempts}, superseded={self.superseded})"
        )
