"""Tests for the ScheduleSet YAML loader."""

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from routecollect.core.errors import ScheduleError
from routecollect.scheduling.loader import load_schedules, load_schedules_from_yaml

CHICAGO = ZoneInfo("America/Chicago")

VALID = """\
apiVersion: routecollect.io/v1
kind: ScheduleSet
defaults:
  task_kind: compute_routes
  weekdays: [mon, tue, wed, thu, fri]
schedules:
  - id: utsa-to-heb
    window: {start: "13:00", end: "18:00"}
    offsets: ["16:00", 42]
    until: "2023-10-15T13:00:00-05:00"
    staleness_seconds: 120
    metadata:
      origin: UTSA
      destination: HEB
  - id: heb-to-utsa
    task_kind: compute_routes_reverse
    window: {start: "22:00", end: "01:00"}
    offsets: ["00:30"]
    weekdays: [sat, 7]
"""


def _doc(**schedule) -> dict:
    entry = {"id": "s", "window": {"start": "08:00", "end": "09:00"}, "offsets": [0]}
    entry.update(schedule)
    return {"apiVersion": "routecollect.io/v1", "kind": "ScheduleSet", "schedules": [entry]}


class TestLoadFromYaml:
    """Whole-file loading."""

    def test_valid_file(self, write_schedule_file):
        path = write_schedule_file(VALID)

        first, second = load_schedules_from_yaml(path)

        assert first.schedule_id == "utsa-to-heb"
        assert first.task_kind == "compute_routes"
        assert first.window_start == time(13)
        assert first.window_end == time(18)
        assert first.offsets == (timedelta(minutes=16), timedelta(minutes=42))
        assert first.weekdays == frozenset({1, 2, 3, 4, 5})
        assert first.until == datetime(2023, 10, 15, 18, 0, tzinfo=UTC)
        assert first.staleness == timedelta(seconds=120)
        assert first.metadata == {"origin": "UTSA", "destination": "HEB"}

        assert second.task_kind == "compute_routes_reverse"
        assert second.spans_midnight
        assert second.offsets == (timedelta(seconds=30),)
        assert second.weekdays == frozenset({6, 7})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_schedules_from_yaml(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, write_schedule_file):
        path = write_schedule_file("schedules: [unclosed\n")
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules_from_yaml(path)
        assert exc_info.value.field == "root"

    def test_unquoted_time_rejected(self, write_schedule_file):
        """YAML 1.1 reads 13:00 as the integer 780."""
        path = write_schedule_file(
            "schedules:\n"
            "  - id: s\n"
            "    window: {start: 13:00, end: \"18:00\"}\n"
            "    offsets: [0]\n"
        )
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules_from_yaml(path)
        assert exc_info.value.field == "window.start"
        assert "quote" in str(exc_info.value)

    def test_naive_timestamp_takes_zone(self, write_schedule_file):
        path = write_schedule_file(
            "schedules:\n"
            "  - id: s\n"
            "    window: {start: \"08:00\", end: \"09:00\"}\n"
            "    offsets: [0]\n"
            "    not_before: \"2024-03-05T08:00:00\"\n"
        )
        (schedule,) = load_schedules_from_yaml(path, timezone="America/Chicago")
        assert schedule.not_before == datetime(2024, 3, 5, 8, 0, tzinfo=CHICAGO)


class TestDocumentValidation:
    """Structural errors carry the offending field."""

    @pytest.mark.parametrize(
        "data,field",
        [
            ([], "root"),
            ({"apiVersion": "v2", "schedules": []}, "apiVersion"),
            ({"kind": "Pipeline", "schedules": []}, "kind"),
            ({"apiVersion": "routecollect.io/v1"}, "schedules"),
            ({"schedules": []}, "schedules"),
            ({"schedules": ["s"]}, "schedules[0]"),
            ({"defaults": [1], "schedules": []}, "defaults"),
        ],
    )
    def test_structure(self, data, field):
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules(data)
        assert exc_info.value.field == field

    def test_duplicate_id(self):
        data = _doc()
        data["schedules"].append(dict(data["schedules"][0]))
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules(data)
        assert exc_info.value.field == "id"

    @pytest.mark.parametrize(
        "override,field",
        [
            ({"id": ""}, "id"),
            ({"colour": "red"}, "colour"),
            ({"window": "08:00-09:00"}, "window"),
            ({"window": {"start": "8am", "end": "09:00"}}, "window.start"),
            ({"offsets": "0"}, "offsets"),
            ({"offsets": ["ab:cd"]}, "offsets"),
            ({"offsets": [True]}, "offsets"),
            ({"weekdays": ["funday"]}, "weekdays"),
            ({"until": "tomorrow"}, "until"),
            ({"until": "2024-03-05T08:00:00"}, "until"),
            ({"max_occurrences": "3"}, "max_occurrences"),
            ({"staleness_seconds": "fast"}, "staleness_seconds"),
            ({"metadata": ["x"]}, "metadata"),
        ],
    )
    def test_bad_entry(self, override, field):
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules(_doc(**override))
        assert exc_info.value.field == field

    def test_model_validation_surfaces(self):
        """Values that parse but break Schedule rules still fail."""
        with pytest.raises(ScheduleError) as exc_info:
            load_schedules(_doc(offsets=[60]))
        assert exc_info.value.field == "offsets"

    def test_entry_overrides_defaults(self):
        data = _doc(task_kind="b")
        data["defaults"] = {"task_kind": "a", "max_occurrences": 3}
        (schedule,) = load_schedules(data)
        assert schedule.task_kind == "b"
        assert schedule.max_occurrences == 3

    def test_schedule_id_alias(self):
        data = _doc()
        data["schedules"][0]["schedule_id"] = data["schedules"][0].pop("id")
        (schedule,) = load_schedules(data)
        assert schedule.schedule_id == "s"
