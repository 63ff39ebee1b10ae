"""
CLI utility helpers: output formatting and settings.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from routecollect.core.errors import RouteCollectError, ScheduleError
from routecollect.core.settings import SchedulerSettings
from routecollect.scheduling.loader import load_schedules_from_yaml
from routecollect.scheduling.models import Schedule

console = Console()
err_console = Console(stderr=True)


# ── Settings helper ──────────────────────────────────────────────────────


def load_settings(**overrides: Any) -> SchedulerSettings:
    """Build settings from the environment plus non-None CLI overrides."""
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return SchedulerSettings(**values)
    except ValidationError as e:
        fail(f"invalid configuration: {e.errors()[0]['msg']}", code="CONFIG")


def load_schedule_file(path: Path, settings: SchedulerSettings) -> list[Schedule]:
    """Load a ScheduleSet file, exiting with a readable error if it is invalid."""
    try:
        return load_schedules_from_yaml(path, timezone=settings.zone)
    except FileNotFoundError as e:
        fail(str(e), code="NOT_FOUND")
    except ScheduleError as e:
        fail_with(e)


def parse_instant(value: str, settings: SchedulerSettings) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read in the configured zone."""
    try:
        instant = datetime.fromisoformat(value)
    except ValueError:
        fail(f"not an ISO-8601 timestamp: {value!r}", code="USAGE")
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=settings.zone)
    return instant


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, *, code: str = "ERROR") -> None:
    """Print an error and exit with status 1."""
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
    raise typer.Exit(code=1)


def fail_with(error: RouteCollectError) -> None:
    field = getattr(error, "field", None)
    suffix = f" [dim](field: {field})[/dim]" if field else ""
    fail(f"{escape(error.message)}{suffix}", code=error.__class__.__name__)


def output_rows(rows: list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of dicts as JSON or a Rich table."""
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)
