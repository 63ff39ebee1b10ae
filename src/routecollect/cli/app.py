"""
Root Typer application for the routecollect CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from routecollect.cli.run import run
from routecollect.cli.schedules import preview, validate
from routecollect.core.logging import configure_logging

app = Typer(
    name="routecollect",
    help="routecollect: precisely timed, recurring routing-data collection.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from routecollect import __version__

        typer.echo(f"routecollect {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """routecollect CLI: preview, validate and run collection schedules."""
    # quiet by default; `run` reconfigures from settings
    configure_logging(level="WARNING")


# ── Commands ─────────────────────────────────────────────────────────────

app.command("preview")(preview)
app.command("validate")(validate)
app.command("run")(run)
