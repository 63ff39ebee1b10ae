"""
CLI: ``routecollect run``: run the scheduler until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer

from routecollect.cli.utils import fail, fail_with, load_schedule_file, load_settings
from routecollect.core.errors import ConfigError, ScheduleError, SchedulerCrashedError
from routecollect.core.logging import configure_logging, get_logger
from routecollect.core.settings import SchedulerSettings
from routecollect.scheduling.executors import load_executor
from routecollect.scheduling.models import Schedule
from routecollect.scheduling.protocol import TaskExecutor
from routecollect.scheduling.service import SchedulerService

logger = get_logger(__name__)

DEFAULT_EXECUTOR = "routecollect.scheduling.executors:LoggingExecutor"


def run(
    path: Path | None = typer.Argument(None, help="ScheduleSet YAML file (default: ROUTECOLLECT_SCHEDULES_FILE)"),
    executor_ref: str = typer.Option(DEFAULT_EXECUTOR, "--executor", "-e", help="Executor as 'module:attr'"),
    timezone: str | None = typer.Option(None, "--timezone", "--tz", help="Override ROUTECOLLECT_TIMEZONE"),
    max_concurrency: int | None = typer.Option(None, "--max-concurrency", min=1),
    duration: float | None = typer.Option(None, "--duration", min=0, help="Stop after this many seconds"),
    log_level: str | None = typer.Option(None, "--log-level"),
) -> None:
    """Run the scheduler until interrupted."""
    settings = load_settings(timezone=timezone, max_concurrency=max_concurrency, log_level=log_level)
    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    path = path or settings.schedules_file
    if path is None:
        fail("no schedule file given and ROUTECOLLECT_SCHEDULES_FILE is not set", code="USAGE")
    schedules = load_schedule_file(path, settings)

    try:
        executor = load_executor(executor_ref)
    except ConfigError as e:
        fail_with(e)

    try:
        asyncio.run(_serve(executor, schedules, settings, duration))
    except (ScheduleError, SchedulerCrashedError) as e:
        fail_with(e)


async def _serve(
    executor: TaskExecutor,
    schedules: list[Schedule],
    settings: SchedulerSettings,
    duration: float | None,
) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("cli.signal_handler_unavailable", signal=sig.name)
    if duration is not None:
        loop.call_later(duration, stop.set)

    service = SchedulerService(executor, settings=settings)
    await service.start()
    try:
        for schedule in schedules:
            await service.register_schedule(schedule)
        logger.info("cli.running", schedules=len(schedules), executor=type(executor).__name__)
        await service.run_until_stopped(stop)
    finally:
        await service.shutdown()
