"""Executor: runs a claimed job through the pipeline for its kind."""

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

from coach_jobs.config import CoachJobsConfig
from coach_jobs.errors import (
    ConfigurationError,
    ExhaustionError,
    LeaseLostError,
    PreconditionError,
    format_error,
)
from coach_jobs.feedback import FeedbackResult, parse_feedback
from coach_jobs.models import Job, JobKind, JobOutcome, JobStatus
from coach_jobs.prompts import (
    SYSTEM_INSTRUCTIONS,
    build_period_request,
    build_session_request,
)
from coach_jobs.retry import decide_retry
from coach_jobs.store import JobStore
from coach_jobs.timeutil import day_bounds, parse_timestamp, utc_now

RECENT_HISTORY_LIMIT = 8
PERIOD_SESSIONS_LIMIT = 40

MESSAGE_HEADERS = {
    JobKind.SESSION: "Session review:",
    JobKind.PERIOD: "Period summary:",
}
ACTION_LABELS = {
    JobKind.SESSION: "Open review",
    JobKind.PERIOD: "Open summary",
}

Pipeline = Callable[[Job], Awaitable[FeedbackResult]]


class JobExecutor:
    """Executes claimed jobs and writes their outcome back to the store."""

    def __init__(
        self,
        config: CoachJobsConfig,
        store: JobStore,
        context: Any,
        generator: Optional[Any] = None,
        notifier: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = store
        self.context = context
        self.generator = generator
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

        self._pipelines: Dict[JobKind, Pipeline] = {
            JobKind.SESSION: self._run_session_pipeline,
            JobKind.PERIOD: self._run_period_pipeline,
        }
        missing = set(JobKind) - set(self._pipelines)
        if missing:
            raise ConfigurationError(
                f"No pipeline for job kinds: {sorted(k.value for k in missing)}"
            )

    @property
    def pipelines(self) -> Dict[JobKind, Pipeline]:
        return dict(self._pipelines)

    async def execute(self, job: Job) -> JobOutcome:
        """
        Run a claimed job to an outcome.

        Failures in context gathering, generation or validation are converted
        into a retry or a terminal failure; they never propagate. A write-back
        rejected because the lease was lost is reported as superseded.
        """
        pipeline = self._pipelines[job.kind]
        self.logger.info(
            f"Executing job {job.id} (kind={job.kind.value}, attempt={job.attempts})"
        )

        try:
            result = await pipeline(job)
        except Exception as e:
            return await self._handle_failure(job, e)

        document = result.model_dump(mode="json")
        try:
            await self.store.mark_done(job.id, job.attempts, document, utc_now())
        except LeaseLostError as e:
            self.logger.warning(f"Dropping result of job {job.id}: {e}")
            return JobOutcome(
                job_id=job.id,
                status=JobStatus.PROCESSING,
                attempts=job.attempts,
                executed=True,
                superseded=True,
            )

        self.logger.info(f"Job {job.id} completed successfully")
        await self._notify(job, result)

        return JobOutcome(
            job_id=job.id,
            status=JobStatus.DONE,
            attempts=job.attempts,
            result=document,
            executed=True,
        )

    async def _handle_failure(self, job: Job, exc: Exception) -> JobOutcome:
        now = utc_now()
        error = format_error(exc)
        terminal = isinstance(exc, PreconditionError) and self.config.fail_fast_on_precondition
        decision = decide_retry(
            attempts=job.attempts,
            max_attempts=self.config.max_attempts,
            base_seconds=self.config.backoff_base_seconds,
            ceiling_seconds=self.config.backoff_ceiling_seconds,
            now=now,
            terminal=terminal,
        )

        try:
            if decision.will_retry:
                await self.store.mark_retry(
                    job.id, job.attempts, error, decision.next_run_at, now
                )
                self.logger.warning(
                    f"Job {job.id} failed (attempt {job.attempts}/"
                    f"{self.config.max_attempts}), retrying after "
                    f"{decision.delay_seconds:.0f}s: {error}"
                )
            else:
                if not terminal:
                    error = format_error(ExhaustionError(job.id, job.attempts, error))
                await self.store.mark_failed(job.id, job.attempts, error, now)
                self.logger.error(f"Job {job.id} failed permanently: {error}")
        except LeaseLostError as e:
            self.logger.warning(f"Dropping failure of job {job.id}: {e}")
            return JobOutcome(
                job_id=job.id,
                status=JobStatus.PROCESSING,
                attempts=job.attempts,
                error=error,
                executed=True,
                superseded=True,
            )

        return JobOutcome(
            job_id=job.id,
            status=decision.status,
            attempts=job.attempts,
            error=error,
            next_run_at=decision.next_run_at,
            executed=True,
        )

    def _require_generator(self) -> Any:
        if self.generator is None:
            raise ConfigurationError("Generation service is not configured")
        return self.generator

    async def _generate(self, job: Job, request: Dict[str, Any]) -> FeedbackResult:
        generator = self._require_generator()
        raw = await generator.generate(SYSTEM_INSTRUCTIONS, request)
        return parse_feedback(
            raw, job.kind, created_at=utc_now(), include_raw=self.config.debug
        )

    async def _run_session_pipeline(self, job: Job) -> FeedbackResult:
        if not job.session_ref:
            raise PreconditionError(f"Session job {job.id} has no session reference")

        session = await self.context.get_session(job.owner_id, job.session_ref)
        if not session:
            raise PreconditionError(f"Session {job.session_ref} has no recorded workout")

        profile = await self.context.get_profile(job.owner_id)
        checkin = await self.context.get_latest_checkin(job.owner_id)
        before = parse_timestamp(session.get("finished_at")) or utc_now()
        recent = await self.context.get_recent_sessions(
            job.owner_id, before, RECENT_HISTORY_LIMIT
        )

        request = build_session_request(profile, checkin, session, recent)
        return await self._generate(job, request)

    async def _run_period_pipeline(self, job: Job) -> FeedbackResult:
        today = utc_now().date()
        period_end = job.period_end or today
        period_start = job.period_start or (
            period_end - timedelta(days=self.config.period_days - 1)
        )
        start, end = day_bounds(period_start, period_end)

        sessions = await self.context.get_sessions_in_period(
            job.owner_id, start, end, PERIOD_SESSIONS_LIMIT
        )
        if len(sessions) < self.config.period_min_sessions:
            raise PreconditionError(
                f"Period {period_start}..{period_end} has {len(sessions)} sessions, "
                f"need {self.config.period_min_sessions}"
            )

        profile = await self.context.get_profile(job.owner_id)
        checkin = await self.context.get_latest_checkin(job.owner_id)

        request = build_period_request(
            profile,
            checkin,
            period_start.isoformat(),
            period_end.isoformat(),
            sessions,
        )
        return await self._generate(job, request)

    async def _notify(self, job: Job, result: FeedbackResult) -> None:
        """Best-effort delivery; failures are logged and never change the job."""
        if self.notifier is None or not result.message.bullets:
            return

        try:
            destination = await self.context.get_notification_destination(job.owner_id)
            if not destination:
                self.logger.debug(f"No notification destination for job {job.id}")
                return

            text = "\n".join(
                [MESSAGE_HEADERS[job.kind]] + [f"• {b}" for b in result.message.bullets]
            )
            receipt = await self.notifier.send(
                destination,
                text,
                action_url=self._action_url(job),
                action_label=ACTION_LABELS[job.kind],
            )
            await self.store.mark_notified(job.id, receipt.message_ref, utc_now())
            self.logger.info(f"Notification sent for job {job.id}")
        except Exception as e:
            self.logger.warning(f"Notification for job {job.id} failed: {e}")

    def _action_url(self, job: Job) -> Optional[str]:
        if not self.config.webapp_url:
            return None
        if job.kind == JobKind.SESSION and job.session_ref:
            return (
                f"{self.config.webapp_url}/workout/result"
                f"?sessionId={quote(job.session_ref, safe='')}"
            )
        return self.config.webapp_url

