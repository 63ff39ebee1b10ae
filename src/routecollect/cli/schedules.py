"""
CLI: ``routecollect preview`` / ``routecollect validate``: inspect schedule files.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import typer

from routecollect.cli.utils import console, load_schedule_file, load_settings, output_rows, parse_instant
from routecollect.scheduling.models import Schedule
from routecollect.scheduling.occurrences import OccurrenceGenerator

_DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _offsets(schedule: Schedule) -> str:
    parts = []
    for offset in schedule.offsets:
        minutes, seconds = divmod(int(offset.total_seconds()), 60)
        parts.append(f"{minutes:02d}:{seconds:02d}")
    return ", ".join(parts)


def preview(
    path: Path = typer.Argument(..., help="ScheduleSet YAML file"),
    days: float = typer.Option(1.0, "--days", "-n", min=0, help="How many days ahead to list"),
    start: str | None = typer.Option(None, "--from", help="Start instant (ISO-8601, default: now)"),
    timezone: str | None = typer.Option(None, "--timezone", "--tz", help="Override ROUTECOLLECT_TIMEZONE"),
    limit: int = typer.Option(200, "--limit", min=1, help="Maximum rows"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the occurrences a schedule file produces."""
    settings = load_settings(timezone=timezone)
    schedules = load_schedule_file(path, settings)
    generator = OccurrenceGenerator(settings.zone)

    lower = parse_instant(start, settings) if start else datetime.now(UTC)
    upper = lower + timedelta(days=days)

    rows = []
    for schedule in schedules:
        instants = generator.occurrences_between(schedule, lower, upper)
        if schedule.max_occurrences is not None:
            instants = instants[: schedule.max_occurrences]
        for due_at in instants:
            rows.append(
                {
                    "schedule_id": schedule.schedule_id,
                    "task_kind": schedule.task_kind,
                    "due_local": due_at.astimezone(settings.zone).isoformat(),
                    "due_utc": due_at.isoformat(),
                }
            )
    rows.sort(key=lambda r: (r["due_utc"], r["schedule_id"]))
    truncated = len(rows) > limit
    rows = rows[:limit]

    output_rows(rows, as_json=json_out, title=f"Occurrences ({settings.timezone})")
    if truncated and not json_out:
        console.print(f"\n[dim]Showing first {limit} occurrences.[/dim]")


def validate(
    path: Path = typer.Argument(..., help="ScheduleSet YAML file"),
    timezone: str | None = typer.Option(None, "--timezone", "--tz", help="Override ROUTECOLLECT_TIMEZONE"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check a schedule file and show the next due instant of each schedule."""
    settings = load_settings(timezone=timezone)
    schedules = load_schedule_file(path, settings)
    generator = OccurrenceGenerator(settings.zone)
    now = datetime.now(UTC)

    rows = []
    for schedule in schedules:
        next_due = generator.first_after(schedule, now)
        rows.append(
            {
                "schedule_id": schedule.schedule_id,
                "task_kind": schedule.task_kind,
                "window": f"{schedule.window_start:%H:%M}-{schedule.window_end:%H:%M}",
                "offsets": _offsets(schedule),
                "weekdays": ",".join(_DAY_NAMES[d - 1] for d in sorted(schedule.weekdays)),
                "until": schedule.until.isoformat() if schedule.until else None,
                "next_due": next_due.astimezone(settings.zone).isoformat() if next_due else None,
            }
        )

    output_rows(rows, as_json=json_out, title=f"{path.name}: {len(rows)} schedule(s) OK")
