"""Tests for Schedule, Occurrence and TaskRun."""

from datetime import UTC, datetime, time, timedelta

import pytest

from routecollect.core.errors import ScheduleError
from routecollect.scheduling.models import Occurrence, RunOutcome, Schedule, TaskRun

T0 = datetime(2024, 3, 5, 14, 0, tzinfo=UTC)


class TestScheduleValidation:
    """Schedules reject invalid definitions at construction."""

    def test_offsets_sorted(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [45, 0, 15])
        assert schedule.offsets == (timedelta(0), timedelta(minutes=15), timedelta(minutes=45))

    def test_defaults(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        assert schedule.task_kind == "default"
        assert schedule.weekdays == frozenset(range(1, 8))
        assert schedule.until is None
        assert schedule.max_occurrences is None

    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"schedule_id": ""}, "schedule_id"),
            ({"schedule_id": 42}, "schedule_id"),
            ({"schedule_id": None}, "schedule_id"),
            ({"offsets": ()}, "offsets"),
            ({"offsets": (timedelta(hours=1),)}, "offsets"),
            ({"offsets": (timedelta(minutes=-1),)}, "offsets"),
            ({"offsets": (timedelta(0), timedelta(0))}, "offsets"),
            ({"weekdays": frozenset()}, "weekdays"),
            ({"weekdays": frozenset({0, 1})}, "weekdays"),
            ({"until": datetime(2024, 3, 5)}, "until"),
            ({"until": "2024-03-05T14:00:00+00:00"}, "until"),
            ({"not_before": 1709647200}, "not_before"),
            ({"not_before": T0, "until": T0}, "until"),
            ({"max_occurrences": 0}, "max_occurrences"),
            ({"max_occurrences": "3"}, "max_occurrences"),
            ({"staleness": 300}, "staleness"),
            ({"staleness": timedelta(0)}, "staleness"),
        ],
    )
    def test_invalid_fields(self, kwargs, field):
        """Each invalid field raises ScheduleError naming the field."""
        base = {
            "schedule_id": "s",
            "window_start": time(8),
            "window_end": time(17),
            "offsets": (timedelta(0),),
        }
        base.update(kwargs)
        with pytest.raises(ScheduleError) as exc_info:
            Schedule(**base)
        assert exc_info.value.field == field

    def test_window_bounds_must_be_times(self):
        with pytest.raises(ScheduleError):
            Schedule(schedule_id="s", window_start="08:00", window_end=time(17), offsets=(timedelta(0),))

    def test_immutable(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        with pytest.raises(AttributeError):
            schedule.schedule_id = "other"

    def test_hour_in_window_spanning_midnight(self):
        schedule = Schedule.from_minutes("s", time(22), time(2), [0])
        assert schedule.spans_midnight
        assert schedule.hour_in_window(time(23))
        assert schedule.hour_in_window(time(0))
        assert schedule.hour_in_window(time(2))
        assert not schedule.hour_in_window(time(12))

    def test_to_dict(self):
        schedule = Schedule.from_minutes("s", time(13), time(18), [16], weekdays=frozenset({1, 2}))
        data = schedule.to_dict()
        assert data["schedule_id"] == "s"
        assert data["window_start"] == "13:00:00"
        assert data["offsets_seconds"] == [960]
        assert data["weekdays"] == [1, 2]


class TestOccurrence:
    """Occurrence ordering and keys."""

    def test_key_and_order(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        first = Occurrence(schedule, T0, sequence=7)
        tie = Occurrence(schedule, T0, sequence=3)
        later = Occurrence(schedule, T0 + timedelta(minutes=1), sequence=1)

        assert first.key == ("s", T0)
        assert sorted([later, first, tie]) == [tie, first, later]

    def test_staleness_deadline_default_and_override(self):
        plain = Schedule.from_minutes("a", time(8), time(17), [0])
        strict = Schedule.from_minutes("b", time(8), time(17), [0], staleness=timedelta(minutes=1))

        assert Occurrence(plain, T0, 0).staleness_deadline(timedelta(minutes=5)) == T0 + timedelta(minutes=5)
        assert Occurrence(strict, T0, 0).staleness_deadline(timedelta(minutes=5)) == T0 + timedelta(minutes=1)


class TestTaskRun:
    def test_lateness_and_dict(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        run = TaskRun(
            occurrence=Occurrence(schedule, T0, 4),
            outcome=RunOutcome.SUCCEEDED,
            attempts=1,
            started_at=T0 + timedelta(seconds=2),
            ended_at=T0 + timedelta(seconds=5),
        )

        assert run.succeeded
        assert run.lateness == timedelta(seconds=2)
        data = run.to_dict()
        assert data["outcome"] == "succeeded"
        assert data["sequence"] == 4
        assert data["due_at"] == T0.isoformat()

    def test_lateness_none_when_never_started(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        run = TaskRun(Occurrence(schedule, T0, 0), RunOutcome.OVERRUN, attempts=0, ended_at=T0)
        assert run.lateness is None
        assert not run.succeeded

    def test_dict_carries_error_classification(self):
        schedule = Schedule.from_minutes("s", time(8), time(17), [0])
        run = TaskRun(
            Occurrence(schedule, T0, 0),
            RunOutcome.INTERRUPTED,
            attempts=1,
            ended_at=T0,
            error="InterruptedRunError: run interrupted (shutdown-grace-expired)",
            error_type="InterruptedRunError",
            error_category="SCHEDULING",
        )
        data = run.to_dict()
        assert data["error_type"] == "InterruptedRunError"
        assert data["error_category"] == "SCHEDULING"
