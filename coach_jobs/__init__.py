"""Durable coach feedback job queue backed by PostgreSQL."""

from coach_jobs.config import CoachJobsConfig
from coach_jobs.context import PostgresContextProvider
from coach_jobs.ddl import COACH_JOBS_TABLE_DDL, apply_schema
from coach_jobs.errors import (
    CoachJobsError,
    CollaboratorError,
    ConfigurationError,
    ExhaustionError,
    JobNotFoundError,
    LeaseLostError,
    PreconditionError,
    RemoteHttpError,
    ValidationError,
)
from coach_jobs.executor import JobExecutor
from coach_jobs.feedback import FeedbackResult, parse_feedback
from coach_jobs.generation import GenerationClient
from coach_jobs.models import (
    ClaimResult,
    ClaimStatus,
    Job,
    JobKind,
    JobOutcome,
    JobSnapshot,
    JobStatus,
)
from coach_jobs.notifier import NotificationReceipt, TelegramNotifier
from coach_jobs.retry import RetryDecision, calculate_backoff, decide_retry
from coach_jobs.service import CoachJobService
from coach_jobs.store import JobStore
from coach_jobs.worker import run_worker_loop, run_worker_tick

__version__ = "0.1.0"

__all__ = [
    "CoachJobsConfig",
    "PostgresContextProvider",
    "COACH_JOBS_TABLE_DDL",
    "apply_schema",
    "CoachJobsError",
    "CollaboratorError",
    "ConfigurationError",
    "ExhaustionError",
    "JobNotFoundError",
    "LeaseLostError",
    "PreconditionError",
    "RemoteHttpError",
    "ValidationError",
    "JobExecutor",
    "FeedbackResult",
    "parse_feedback",
    "GenerationClient",
    "ClaimResult",
    "ClaimStatus",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobSnapshot",
    "JobStatus",
    "NotificationReceipt",
    "TelegramNotifier",
    "RetryDecision",
    "calculate_backoff",
    "decide_retry",
    "CoachJobService",
    "JobStore",
    "run_worker_loop",
    "run_worker_tick",
]
