"""Exception types for the coach jobs library."""

from typing import Optional


class CoachJobsError(Exception):
    """Base exception for all coach jobs errors."""

    pass


class ConfigurationError(CoachJobsError):
    """Raised when a required collaborator credential is not configured."""

    pass


class PreconditionError(CoachJobsError):
    """Raised when a job references missing or insufficient underlying data."""

    pass


class CollaboratorError(CoachJobsError):
    """Raised when a collaborator call (generation, messaging, store) fails."""

    pass


class RemoteHttpError(CollaboratorError):
    """Raised when an HTTP request to a remote collaborator fails."""

    def __init__(
        self, status_code: int, message: str, response_body: Optional[str] = None
    ):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")


class ValidationError(CoachJobsError):
    """Raised when generated output is malformed beyond repair."""

    pass


class ExhaustionError(CoachJobsError):
    """Raised when a job has used up all of its attempts."""

    def __init__(self, job_id, attempts: int, cause: Optional[str] = None):
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause
        message = f"Job {job_id} exhausted after {attempts} attempts"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message)


class JobNotFoundError(CoachJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: Optional[str] = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class LeaseLostError(CoachJobsError):
    """Raised when a write-back finds the job no longer held by this claimant."""

    def __init__(self, job_id, expected_attempts: int):
        self.job_id = job_id
        self.expected_attempts = expected_attempts
        super().__init__(
            f"Job {job_id} is no longer processing at attempt {expected_attempts}"
        )


def format_error(exc: BaseException, limit: int = 2000) -> str:
    """Render an exception as the diagnostic text stored in last_error."""
    message = str(exc).strip() or repr(exc)
    cause = exc.__cause__
    if cause is not None and str(cause).strip():
        message = f"{message}: {cause}"
    return f"{type(exc).__name__}: {message}"[:limit]
