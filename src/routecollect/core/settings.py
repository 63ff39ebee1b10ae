"""Scheduler settings.

Configuration should be explicit, validated, and environment-driven. Every
knob of the scheduler core is a field here, read from ``ROUTECOLLECT_*``
environment variables or a ``.env`` file, and checked by pydantic at
startup rather than when the first occurrence fires.

Examples:
    >>> from routecollect.core.settings import SchedulerSettings
    >>> settings = SchedulerSettings(timezone="America/Chicago", max_concurrency=2)
    >>> settings.staleness
    datetime.timedelta(seconds=300)

Environment::

    ROUTECOLLECT_TIMEZONE=America/Chicago
    ROUTECOLLECT_MAX_CONCURRENCY=4
    ROUTECOLLECT_STALENESS_SECONDS=300
    ROUTECOLLECT_SCHEDULES_FILE=schedules.yaml
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from routecollect.scheduling.retry import RetryPolicy


class SchedulerSettings(BaseSettings):
    """All scheduler configuration in one validated object.

    Fields
    ──────
    timezone                : IANA zone that defines "hour" and "day" for every schedule
    max_concurrency         : Concurrently running task attempts
    queue_capacity          : Due occurrences allowed to wait for a free worker
    staleness_seconds       : Max delay between due instant and start before overrun
    attempt_timeout_seconds : Per-attempt executor timeout
    max_attempts            : Total attempts for retryable failures
    backoff_*               : Exponential backoff between attempts
    horizon_hours           : How far ahead occurrences are materialised
    refill_interval_seconds : Longest the loop sleeps before re-checking the horizon
    grace_period_seconds    : How long shutdown waits for in-flight runs
    """

    model_config = SettingsConfigDict(
        env_prefix="ROUTECOLLECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Time model ───────────────────────────────────────────────
    timezone: str = "UTC"
    horizon_hours: float = Field(default=24.0, gt=0)
    refill_interval_seconds: float = Field(default=900.0, gt=0)

    # ── Dispatch ─────────────────────────────────────────────────
    max_concurrency: int = Field(default=4, ge=1)
    queue_capacity: int = Field(default=16, ge=1)
    staleness_seconds: float = Field(default=300.0, gt=0)
    attempt_timeout_seconds: float = Field(default=30.0, gt=0)

    # ── Retry ────────────────────────────────────────────────────
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_jitter: bool = True

    # ── Lifecycle ────────────────────────────────────────────────
    grace_period_seconds: float = Field(default=10.0, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console", "auto"] = "auto"

    # ── Inputs ───────────────────────────────────────────────────
    schedules_file: Path | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.horizon_hours)

    @property
    def staleness(self) -> timedelta:
        return timedelta(seconds=self.staleness_seconds)

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy described by the backoff fields."""
        from routecollect.scheduling.retry import ExponentialBackoff, RetryPolicy

        return RetryPolicy(
            strategy=ExponentialBackoff(
                base_delay=self.backoff_base_seconds,
                max_delay=self.backoff_max_seconds,
                multiplier=self.backoff_multiplier,
                jitter=self.backoff_jitter,
            ),
            max_attempts=self.max_attempts,
        )
