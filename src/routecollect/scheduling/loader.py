"""
YAML loader for schedule sets.

File Format (YAML):
    apiVersion: routecollect.io/v1
    kind: ScheduleSet
    defaults:
      task_kind: compute_routes
      weekdays: [mon, tue, wed, thu, fri]
    schedules:
      - id: utsa-to-heb
        window: {start: "13:00", end: "18:00"}
        offsets: ["16:00", 42]          # "MM:SS" strings or whole minutes
        until: 2023-10-15T13:00:00-05:00
        staleness_seconds: 300
        metadata:
          origin: UTSA
          destination: HEB

Quote ``HH:MM`` / ``MM:SS`` values: YAML 1.1 reads an unquoted ``13:00`` as
the base-60 integer 780.
"""

from datetime import datetime, time, timedelta, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import structlog
import yaml

from routecollect.core.errors import ScheduleError
from routecollect.scheduling.models import ALL_WEEKDAYS, Schedule

logger = structlog.get_logger(__name__)

# Supported API versions
SUPPORTED_API_VERSIONS = {"routecollect.io/v1"}
KIND = "ScheduleSet"

WEEKDAY_NAMES = {
    "mon": 1, "monday": 1,
    "tue": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3,
    "thu": 4, "thursday": 4,
    "fri": 5, "friday": 5,
    "sat": 6, "saturday": 6,
    "sun": 7, "sunday": 7,
}

_KNOWN_FIELDS = {
    "id", "schedule_id", "task_kind", "window", "offsets", "weekdays",
    "not_before", "until", "max_occurrences", "staleness_seconds", "metadata",
}


def load_schedules_from_yaml(path: Path | str, timezone: tzinfo | str | None = None) -> list[Schedule]:
    """
    Load every Schedule from a ScheduleSet YAML file.

    Args:
        path: Path to YAML file
        timezone: Zone used for ``not_before`` / ``until`` values written
            without a UTC offset; without it such values are rejected

    Returns:
        Parsed schedules, in file order

    Raises:
        FileNotFoundError: If file doesn't exist
        ScheduleError: If YAML is invalid or doesn't match the format
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Schedule file not found: {path}")

    logger.debug("loader.load_yaml", path=str(path))

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ScheduleError(f"Invalid YAML in {path}: {e}", field="root") from e

    schedules = load_schedules(data, timezone=timezone)

    logger.info(
        "loader.loaded",
        path=str(path),
        schedule_count=len(schedules),
        schedule_ids=[s.schedule_id for s in schedules],
    )
    return schedules


def load_schedules(data: Any, timezone: tzinfo | str | None = None) -> list[Schedule]:
    """Parse an already-decoded ScheduleSet document."""
    if not isinstance(data, dict):
        raise ScheduleError(f"Expected dict, got {type(data).__name__}", field="root")

    api_version = data.get("apiVersion")
    if api_version and api_version not in SUPPORTED_API_VERSIONS:
        raise ScheduleError(
            f"Unsupported apiVersion: {api_version}. Supported: {SUPPORTED_API_VERSIONS}",
            field="apiVersion",
        )

    kind = data.get("kind")
    if kind and kind != KIND:
        raise ScheduleError(f"Expected kind '{KIND}', got '{kind}'", field="kind")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ScheduleError("'defaults' must be a mapping", field="defaults")

    entries = data.get("schedules")
    if not isinstance(entries, list) or not entries:
        raise ScheduleError("'schedules' must be a non-empty list", field="schedules")

    zone = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
    schedules: list[Schedule] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ScheduleError(f"schedules[{index}] must be a mapping", field=f"schedules[{index}]")
        schedule = schedule_from_dict({**defaults, **entry}, zone=zone)
        if schedule.schedule_id in seen:
            raise ScheduleError(
                f"Duplicate schedule id '{schedule.schedule_id}'",
                schedule_id=schedule.schedule_id,
                field="id",
            )
        seen.add(schedule.schedule_id)
        schedules.append(schedule)
    return schedules


def schedule_from_dict(entry: dict[str, Any], zone: tzinfo | None = None) -> Schedule:
    """Build one Schedule from its YAML mapping."""
    sid = entry.get("id", entry.get("schedule_id"))
    if not isinstance(sid, str) or not sid.strip():
        raise ScheduleError("Each schedule needs a non-empty 'id'", field="id")

    unknown = set(entry) - _KNOWN_FIELDS
    if unknown:
        raise ScheduleError(f"Unknown fields: {sorted(unknown)}", schedule_id=sid, field=sorted(unknown)[0])

    window = entry.get("window")
    if not isinstance(window, dict) or "start" not in window or "end" not in window:
        raise ScheduleError("'window' must be a mapping with 'start' and 'end'", schedule_id=sid, field="window")

    raw_offsets = entry.get("offsets")
    if not isinstance(raw_offsets, list):
        raise ScheduleError("'offsets' must be a list", schedule_id=sid, field="offsets")

    kwargs: dict[str, Any] = {}
    if "task_kind" in entry:
        kwargs["task_kind"] = str(entry["task_kind"])
    if "weekdays" in entry:
        kwargs["weekdays"] = _parse_weekdays(entry["weekdays"], sid)
    for name in ("not_before", "until"):
        if entry.get(name) is not None:
            kwargs[name] = _parse_instant(entry[name], sid, name, zone)
    if entry.get("max_occurrences") is not None:
        kwargs["max_occurrences"] = _parse_int(entry["max_occurrences"], sid, "max_occurrences")
    if entry.get("staleness_seconds") is not None:
        kwargs["staleness"] = timedelta(seconds=_parse_number(entry["staleness_seconds"], sid, "staleness_seconds"))
    if entry.get("metadata") is not None:
        if not isinstance(entry["metadata"], dict):
            raise ScheduleError("'metadata' must be a mapping", schedule_id=sid, field="metadata")
        kwargs["metadata"] = dict(entry["metadata"])

    return Schedule(
        schedule_id=sid,
        window_start=_parse_time_of_day(window["start"], sid, "window.start"),
        window_end=_parse_time_of_day(window["end"], sid, "window.end"),
        offsets=tuple(_parse_offset(o, sid) for o in raw_offsets),
        **kwargs,
    )


# =============================================================================
# FIELD PARSERS
# =============================================================================


def _parse_time_of_day(value: Any, sid: str, field: str) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < 24:
            return time(value)
        raise ScheduleError(
            f"{field}: {value} is not an hour of the day (quote HH:MM values)",
            schedule_id=sid,
            field=field,
        )
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ScheduleError(f"{field}: expected 'HH:MM', got {value!r}", schedule_id=sid, field=field)


def _parse_offset(value: Any, sid: str) -> timedelta:
    if isinstance(value, bool):
        raise ScheduleError(f"offsets: invalid offset {value!r}", schedule_id=sid, field="offsets")
    if isinstance(value, (int, float)):
        return timedelta(minutes=value)
    if isinstance(value, str):
        minutes, sep, seconds = value.strip().partition(":")
        try:
            return timedelta(minutes=int(minutes), seconds=int(seconds) if sep else 0)
        except ValueError:
            pass
    raise ScheduleError(f"offsets: expected 'MM:SS' or minutes, got {value!r}", schedule_id=sid, field="offsets")


def _parse_weekdays(value: Any, sid: str) -> frozenset[int]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ScheduleError("'weekdays' must be a list", schedule_id=sid, field="weekdays")
    days: set[int] = set()
    for item in value:
        if isinstance(item, int) and not isinstance(item, bool) and item in ALL_WEEKDAYS:
            days.add(item)
        elif isinstance(item, str) and item.strip().lower() in WEEKDAY_NAMES:
            days.add(WEEKDAY_NAMES[item.strip().lower()])
        else:
            raise ScheduleError(f"weekdays: unknown day {item!r}", schedule_id=sid, field="weekdays")
    return frozenset(days)


def _parse_instant(value: Any, sid: str, field: str, zone: tzinfo | None) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError as e:
            raise ScheduleError(f"{field}: not an ISO-8601 timestamp: {value!r}", schedule_id=sid, field=field) from e
    if not isinstance(value, datetime):
        raise ScheduleError(f"{field}: expected a timestamp, got {value!r}", schedule_id=sid, field=field)
    if value.tzinfo is None:
        if zone is None:
            raise ScheduleError(f"{field}: timestamp needs a UTC offset", schedule_id=sid, field=field)
        value = value.replace(tzinfo=zone)
    return value


def _parse_int(value: Any, sid: str, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScheduleError(f"{field}: expected an integer, got {value!r}", schedule_id=sid, field=field)
    return value


def _parse_number(value: Any, sid: str, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScheduleError(f"{field}: expected a number, got {value!r}", schedule_id=sid, field=field)
    return float(value)
