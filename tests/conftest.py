"""
Shared pytest fixtures for routecollect tests.

This module provides:
- A fixed reference instant (T0) for the scheduling tests
- A ManualClock per test
- Settings with deterministic (jitter-free) retry
- A ScheduleSet YAML writer
- A structlog/stdlib logging reset

Usage:
    Fixtures are auto-discovered by pytest; request them as arguments.
"""

import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest
import structlog

# Ensure routecollect is importable without an editable install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from routecollect.core.settings import SchedulerSettings
from routecollect.scheduling.clock import ManualClock
from routecollect.scheduling.executors import RecordingExecutor

# Tuesday, no DST transition nearby
T0 = datetime(2024, 3, 5, 14, 0, tzinfo=UTC)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def clock() -> ManualClock:
    """ManualClock starting at T0 (2024-03-05 14:00 UTC)."""
    return ManualClock(T0)


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def settings() -> SchedulerSettings:
    """UTC settings with jitter-free, zero-delay retries."""
    return SchedulerSettings(
        timezone="UTC",
        horizon_hours=2,
        backoff_base_seconds=0,
        backoff_jitter=False,
        grace_period_seconds=0.5,
    )


@pytest.fixture
def write_schedule_file(tmp_path: Path) -> Callable[[str], Path]:
    """Write YAML text to a temporary file and return its path."""

    def _write(text: str, name: str = "schedules.yaml") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def reset_logging():
    """Undo configure_logging() after the test."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    logging.getLogger().handlers.clear()
