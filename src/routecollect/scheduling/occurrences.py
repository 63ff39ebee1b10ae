"""Occurrence generation: turning a Schedule into concrete due instants.

┌──────────────────────────────────────────────────────────────────────────────┐
│  OCCURRENCE GENERATION                                                       │
│                                                                              │
│   for each local calendar day D touching (after, after + horizon]:           │
│     if D's ISO weekday is enabled:                                           │
│       for each wall-clock hour H whose start lies in [start, end]            │
│       (hours past midnight belong to D when the window spans midnight):      │
│         for each resolved instant of H (0, 1 or 2, see DST below):           │
│           for each offset O:  due = H(UTC) + O                               │
│                                                                              │
│   keep due if  after < due <= after + horizon                                │
│           and  not_before <= due < until                                     │
│                                                                              │
│  DST:                                                                        │
│   Offsets are anchored to local wall-clock hours. An hour skipped by a       │
│   spring-forward transition has no instant and produces nothing; an hour     │
│   repeated by a fall-back transition has two instants and fires in both.     │
│   A window covering the transition therefore has 23 or 25 scheduled hours    │
│   on those two days.                                                         │
└──────────────────────────────────────────────────────────────────────────────┘

The generator is pure: it never reads a clock, so every computation is
reproducible from its arguments.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from .models import Schedule

_DAY = timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"expected a timezone-aware datetime, got {value!r}")
    return value.astimezone(UTC)


def resolve_wall_time(wall: datetime, zone: tzinfo) -> list[datetime]:
    """Return the UTC instants at which naive wall-clock time *wall* occurs in *zone*.

    Empty for times skipped by a DST gap, two instants for times repeated by
    a DST fold, otherwise exactly one.
    """
    first = wall.replace(tzinfo=zone, fold=0)
    second = wall.replace(tzinfo=zone, fold=1)
    first_utc = first.astimezone(UTC)
    if first_utc.astimezone(zone).replace(tzinfo=None) != wall:
        return []
    if first.utcoffset() != second.utcoffset():
        return sorted({first_utc, second.astimezone(UTC)})
    return [first_utc]


class OccurrenceGenerator:
    """Computes due instants for schedules in one fixed civil timezone.

    Example:
        >>> gen = OccurrenceGenerator(ZoneInfo("America/Chicago"))
        >>> s = Schedule.from_minutes("s", time(8), time(17), [0, 15])
        >>> day = datetime(2024, 3, 5, tzinfo=ZoneInfo("America/Chicago"))
        >>> len(gen.occurrences_between(s, day, day + timedelta(days=1)))
        20
    """

    def __init__(self, zone: tzinfo | str = "UTC") -> None:
        self.zone: tzinfo = ZoneInfo(zone) if isinstance(zone, str) else zone

    def next_occurrences(
        self,
        schedule: Schedule,
        after: datetime,
        horizon: timedelta,
    ) -> list[datetime]:
        """Due instants in ``(after, after + horizon]``, ascending, as aware UTC datetimes."""
        if horizon < timedelta(0):
            raise ValueError("horizon must not be negative")
        lower = _as_utc(after)
        upper = lower + horizon
        return [t for t in self._candidates(schedule, lower, upper) if lower < t <= upper]

    def occurrences_between(
        self,
        schedule: Schedule,
        start: datetime,
        end: datetime,
    ) -> list[datetime]:
        """Due instants in ``[start, end)``, ascending."""
        lower = _as_utc(start)
        upper = _as_utc(end)
        return [t for t in self._candidates(schedule, lower, upper) if lower <= t < upper]

    def first_after(self, schedule: Schedule, after: datetime, limit: timedelta = timedelta(days=14)) -> datetime | None:
        """First due instant strictly after *after*, searching at most *limit* ahead."""
        found = self.next_occurrences(schedule, after, limit)
        return found[0] if found else None

    # ------------------------------------------------------------------

    def _candidates(self, schedule: Schedule, lower: datetime, upper: datetime) -> list[datetime]:
        # Start one day early: a midnight-spanning window opened yesterday
        # still has hours after midnight today.
        first_day = lower.astimezone(self.zone).date() - _DAY
        last_day = upper.astimezone(self.zone).date()

        due: list[datetime] = []
        day = first_day
        while day <= last_day:
            if day.isoweekday() in schedule.weekdays:
                for wall_hour in self._window_hours(schedule, day):
                    for hour_start in resolve_wall_time(wall_hour, self.zone):
                        for offset in schedule.offsets:
                            instant = hour_start + offset
                            if schedule.not_before is not None and instant < schedule.not_before:
                                continue
                            if schedule.until is not None and instant >= schedule.until:
                                continue
                            due.append(instant)
            day += _DAY
        due.sort()
        return due

    @staticmethod
    def _window_hours(schedule: Schedule, day: date) -> Iterator[datetime]:
        """Naive wall-clock hour starts belonging to the window that opens on *day*."""
        for hour in range(24):
            wall = time(hour)
            if not schedule.hour_in_window(wall):
                continue
            # after-midnight part of a spanning window falls on the next date
            if schedule.spans_midnight and wall <= schedule.window_end:
                yield datetime.combine(day + _DAY, wall)
            else:
                yield datetime.combine(day, wall)
