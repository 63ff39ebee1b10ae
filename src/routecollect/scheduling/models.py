"""Scheduling models.

Manifesto:
    The scheduler needs three typed records: *when* a logical task recurs
    (``Schedule``), one concrete firing of it (``Occurrence``), and what
    happened when that firing ran (``TaskRun``). Schedules validate
    themselves on construction so that an invalid window or offset is
    rejected before it ever reaches the timer queue.

Tags:
    routecollect, models, scheduling, dataclasses

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any

from routecollect.core.errors import ScheduleError

HOUR = timedelta(hours=1)
ALL_WEEKDAYS = frozenset(range(1, 8))


class SchedulerState(str, Enum):
    """Coordinating loop states.

    Transition graph::

        IDLE ⇄ WAITING → DRAINING → DISPATCHING → WAITING | IDLE
        any  → SHUTTING_DOWN → STOPPED
    """

    IDLE = "idle"
    WAITING = "waiting"
    DRAINING = "draining"
    DISPATCHING = "dispatching"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


class RunOutcome(str, Enum):
    """Final outcome of one dispatched occurrence."""

    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_FATAL = "failed-fatal"
    OVERRUN = "overrun"
    INTERRUPTED = "interrupted"


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Schedule:
    """Declarative definition of when a logical task recurs.

    Every day on which the window opens, each wall-clock hour whose start
    lies inside ``[window_start, window_end]`` fires once per offset. A
    window with ``window_start > window_end`` spans midnight.

    Example:
        >>> s = Schedule.from_minutes("utsa-to-heb", time(8), time(17), [0, 15])
        >>> [o.seconds // 60 for o in s.offsets]
        [0, 15]
    """

    schedule_id: str
    window_start: time
    window_end: time
    offsets: tuple[timedelta, ...]
    task_kind: str = "default"
    weekdays: frozenset[int] = ALL_WEEKDAYS
    not_before: datetime | None = None
    until: datetime | None = None
    max_occurrences: int | None = None
    staleness: timedelta | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not isinstance(self.schedule_id, str) or not self.schedule_id.strip():
            raise ScheduleError("schedule_id must be a non-empty string", field="schedule_id")
        sid = self.schedule_id

        if not isinstance(self.window_start, time) or not isinstance(self.window_end, time):
            raise ScheduleError("window bounds must be datetime.time values", schedule_id=sid, field="window")
        if self.window_start.tzinfo is not None or self.window_end.tzinfo is not None:
            raise ScheduleError(
                "window bounds are wall-clock times; the scheduler timezone applies",
                schedule_id=sid,
                field="window",
            )

        offsets = tuple(self.offsets)
        if not offsets:
            raise ScheduleError("at least one offset is required", schedule_id=sid, field="offsets")
        for offset in offsets:
            if not isinstance(offset, timedelta) or not (timedelta(0) <= offset < HOUR):
                raise ScheduleError(
                    f"offset {offset!r} is outside [0, 1 hour)", schedule_id=sid, field="offsets"
                )
        if len(set(offsets)) != len(offsets):
            raise ScheduleError("offsets must be unique", schedule_id=sid, field="offsets")
        object.__setattr__(self, "offsets", tuple(sorted(offsets)))

        weekdays = frozenset(self.weekdays)
        if not weekdays or not weekdays <= ALL_WEEKDAYS:
            raise ScheduleError(
                "weekdays must be a non-empty subset of 1 (Mon) .. 7 (Sun)",
                schedule_id=sid,
                field="weekdays",
            )
        object.__setattr__(self, "weekdays", weekdays)

        for name in ("not_before", "until"):
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, datetime):
                raise ScheduleError(f"{name} must be a datetime", schedule_id=sid, field=name)
            if value.tzinfo is None or value.utcoffset() is None:
                raise ScheduleError(f"{name} must be timezone-aware", schedule_id=sid, field=name)
        if self.not_before is not None and self.until is not None and self.not_before >= self.until:
            raise ScheduleError("not_before must be earlier than until", schedule_id=sid, field="until")

        if self.max_occurrences is not None and (
            not isinstance(self.max_occurrences, int) or isinstance(self.max_occurrences, bool) or self.max_occurrences < 1
        ):
            raise ScheduleError("max_occurrences must be >= 1", schedule_id=sid, field="max_occurrences")
        if self.staleness is not None and (not isinstance(self.staleness, timedelta) or self.staleness <= timedelta(0)):
            raise ScheduleError("staleness must be positive", schedule_id=sid, field="staleness")

    @classmethod
    def from_minutes(
        cls,
        schedule_id: str,
        window_start: time,
        window_end: time,
        minutes: Iterable[float],
        **kwargs: Any,
    ) -> Schedule:
        """Build a schedule from offsets given as minutes past the hour."""
        return cls(
            schedule_id=schedule_id,
            window_start=window_start,
            window_end=window_end,
            offsets=tuple(timedelta(minutes=m) for m in minutes),
            **kwargs,
        )

    @property
    def spans_midnight(self) -> bool:
        return self.window_start > self.window_end

    def hour_in_window(self, hour_start: time) -> bool:
        """True if a wall-clock hour starting at *hour_start* belongs to the window."""
        if self.spans_midnight:
            return hour_start >= self.window_start or hour_start <= self.window_end
        return self.window_start <= hour_start <= self.window_end

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "task_kind": self.task_kind,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "offsets_seconds": [int(o.total_seconds()) for o in self.offsets],
            "weekdays": sorted(self.weekdays),
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "until": self.until.isoformat() if self.until else None,
            "max_occurrences": self.max_occurrences,
            "staleness_seconds": self.staleness.total_seconds() if self.staleness else None,
        }


# ---------------------------------------------------------------------------
# Occurrence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Occurrence:
    """One concrete firing of a schedule at ``due_at``.

    ``sequence`` is assigned by the scheduler from a monotonically increasing
    counter; it breaks ties between equal due instants and identifies the
    firing in logs and run events.
    """

    schedule: Schedule
    due_at: datetime
    sequence: int

    @property
    def schedule_id(self) -> str:
        return self.schedule.schedule_id

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.schedule.schedule_id, self.due_at)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.due_at, self.sequence)

    def staleness_deadline(self, default: timedelta) -> datetime:
        """Latest instant at which this occurrence may still start."""
        return self.due_at + (self.schedule.staleness or default)

    def __lt__(self, other: Occurrence) -> bool:
        return self.sort_key < other.sort_key

    def __repr__(self) -> str:
        return f"Occurrence({self.schedule_id!r}, {self.due_at.isoformat()}, seq={self.sequence})"


# ---------------------------------------------------------------------------
# TaskRun
# ---------------------------------------------------------------------------


@dataclass
class TaskRun:
    """Execution record for one dispatched occurrence.

    Finalised exactly once and published on the run event stream; the
    scheduler keeps no history of its own.
    """

    occurrence: Occurrence
    outcome: RunOutcome
    attempts: int
    ended_at: datetime
    started_at: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    error_category: str | None = None
    reason: str | None = None

    @property
    def schedule_id(self) -> str:
        return self.occurrence.schedule_id

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    @property
    def lateness(self) -> timedelta | None:
        """Delay between the due instant and the first attempt's start."""
        if self.started_at is None:
            return None
        return self.started_at - self.occurrence.due_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "task_kind": self.occurrence.schedule.task_kind,
            "due_at": self.occurrence.due_at.isoformat(),
            "sequence": self.occurrence.sequence,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat(),
            "error": self.error,
            "error_type": self.error_type,
            "error_category": self.error_category,
            "reason": self.reason,
        }
