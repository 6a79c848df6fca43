"""Configuration for the coach jobs queue."""

import os
from datetime import timedelta
from typing import Optional

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {raw!r}") from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


class CoachJobsConfig:
    """Configuration object for coach jobs."""

    def __init__(
        self,
        db_dsn: str,
        max_attempts: int = 10,
        backoff_base_seconds: float = 45,
        backoff_ceiling_seconds: float = 3600,
        stale_lease_seconds: float = 600,
        interval_seconds: float = 25,
        min_interval_seconds: float = 2,
        batch_size: int = 2,
        jitter_pct: float = 0.2,
        fail_fast_on_precondition: bool = False,
        period_days: int = 7,
        period_min_sessions: int = 2,
        period_throttle_days: int = 6,
        openai_api_key: Optional[str] = None,
        openai_model: str = "gpt-4o",
        openai_base_url: str = "https://api.openai.com/v1",
        generation_timeout_seconds: float = 60,
        telegram_bot_token: Optional[str] = None,
        webapp_url: Optional[str] = None,
        debug: bool = False,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if not 0 <= jitter_pct < 1:
            raise ValueError("jitter_pct must be in [0, 1)")
        if backoff_base_seconds <= 0 or backoff_ceiling_seconds < backoff_base_seconds:
            raise ValueError(
                "backoff_base_seconds must be positive and not above the ceiling"
            )
        if stale_lease_seconds <= 0:
            raise ValueError("stale_lease_seconds must be positive")

        self.db_dsn = db_dsn
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_ceiling_seconds = backoff_ceiling_seconds
        self.stale_lease_seconds = stale_lease_seconds
        self.interval_seconds = interval_seconds
        self.min_interval_seconds = min_interval_seconds
        self.batch_size = batch_size
        self.jitter_pct = jitter_pct
        self.fail_fast_on_precondition = fail_fast_on_precondition
        self.period_days = period_days
        self.period_min_sessions = period_min_sessions
        self.period_throttle_days = period_throttle_days
        self.openai_api_key = openai_api_key or None
        self.openai_model = openai_model
        self.openai_base_url = openai_base_url
        self.generation_timeout_seconds = generation_timeout_seconds
        self.telegram_bot_token = telegram_bot_token or None
        self.webapp_url = webapp_url.rstrip("/") if webapp_url else None
        self.debug = debug

    @property
    def stale_lease(self) -> timedelta:
        return timedelta(seconds=self.stale_lease_seconds)

    @property
    def generation_configured(self) -> bool:
        """Whether the generation service credential is present."""
        return bool(self.openai_api_key)

    @property
    def notifications_configured(self) -> bool:
        return bool(self.telegram_bot_token)

    @classmethod
    def from_env(cls) -> "CoachJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("COACH_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("COACH_JOBS_DB_DSN environment variable is required")

        return cls(
            db_dsn=db_dsn,
            max_attempts=_env_int("COACH_JOBS_MAX_ATTEMPTS", 10),
            backoff_base_seconds=_env_float("COACH_JOBS_BACKOFF_BASE_SECONDS", 45),
            backoff_ceiling_seconds=_env_float(
                "COACH_JOBS_BACKOFF_CEILING_SECONDS", 3600
            ),
            stale_lease_seconds=_env_float("COACH_JOBS_STALE_LEASE_SECONDS", 600),
            interval_seconds=_env_float("COACH_JOBS_INTERVAL_SECONDS", 25),
            min_interval_seconds=_env_float("COACH_JOBS_MIN_INTERVAL_SECONDS", 2),
            batch_size=_env_int("COACH_JOBS_BATCH_SIZE", 2),
            jitter_pct=_env_float("COACH_JOBS_JITTER_PCT", 0.2),
            fail_fast_on_precondition=_env_bool(
                "COACH_JOBS_FAIL_FAST_ON_PRECONDITION"
            ),
            period_days=_env_int("COACH_JOBS_PERIOD_DAYS", 7),
            period_min_sessions=_env_int("COACH_JOBS_PERIOD_MIN_SESSIONS", 2),
            period_throttle_days=_env_int("COACH_JOBS_PERIOD_THROTTLE_DAYS", 6),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("COACH_JOBS_OPENAI_MODEL", "gpt-4o"),
            openai_base_url=os.getenv(
                "COACH_JOBS_OPENAI_BASE_URL", "https://api.openai.com/v1"
            ),
            generation_timeout_seconds=_env_float(
                "COACH_JOBS_GENERATION_TIMEOUT_SECONDS", 60
            ),
            telegram_bot_token=os.getenv("COACH_JOBS_TELEGRAM_BOT_TOKEN"),
            webapp_url=os.getenv("COACH_JOBS_WEBAPP_URL"),
            debug=_env_bool("COACH_JOBS_DEBUG"),
        )
