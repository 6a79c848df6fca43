"""Retry and backoff policy for coach jobs.

Everything here is a pure function of its arguments so the policy can be
tested without a clock or a database.
"""

from datetime import datetime, timedelta
from typing import Optional

from coach_jobs.models import JobStatus

# 2**32 * any sane base is far above any sane ceiling
_MAX_EXPONENT = 32


def calculate_backoff(attempt: int, base_seconds: float, ceiling_seconds: float) -> float:
    """
    Calculate the retry delay for an attempt number.

    Args:
        attempt: Attempt that just failed (1-indexed; values below 1 count as 1)
        base_seconds: Delay after the first failure
        ceiling_seconds: Upper bound on any delay

    Returns:
        Delay in seconds: min(ceiling, base * 2^(attempt-1))
    """
    exponent = min(max(1, attempt) - 1, _MAX_EXPONENT)
    return min(ceiling_seconds, base_seconds * (2 ** exponent))


class RetryDecision:
    """Where a failed job goes next."""

    def __init__(
        self,
        status: JobStatus,
        delay_seconds: Optional[float] = None,
        next_run_at: Optional[datetime] = None,
    ):
        self.status = status
        self.delay_seconds = delay_seconds
        self.next_run_at = next_run_at

    @property
    def will_retry(self) -> bool:
        return self.status == JobStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"RetryDecision(status={self.status.value}, "
            f"delay_seconds={self.delay_seconds})"
        )


def decide_retry(
    attempts: int,
    max_attempts: int,
    base_seconds: float,
    ceiling_seconds: float,
    now: datetime,
    terminal: bool = False,
) -> RetryDecision:
    """
    Decide what happens to a job whose current attempt failed.

    A job with attempts left goes back to pending with next_run_at pushed out
    by the backoff for this attempt. A job out of attempts, or a failure the
    caller marks terminal, fails for good.
    """
    if terminal or attempts >= max_attempts:
        return RetryDecision(JobStatus.FAILED)

    delay = calculate_backoff(attempts, base_seconds, ceiling_seconds)
    return RetryDecision(
        JobStatus.PENDING,
        delay_seconds=delay,
        next_run_at=now + timedelta(seconds=delay),
    )
