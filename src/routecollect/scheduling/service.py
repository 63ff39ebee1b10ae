"""Scheduler service - the coordinating loop.

Manifesto:
    One asyncio task owns the timer queue and the schedule registry. It
    materialises occurrences for a rolling horizon, sleeps until the earliest
    due instant (or until a command arrives), drains what is due and hands it
    to the dispatcher. Nothing outside the loop touches the queue or the
    registry: registration, cancellation and shutdown are commands sent over
    a single channel, and every command wakes the loop immediately.

Tags:
    routecollect, scheduling, orchestrator, state-machine, service

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER LOOP                                                              │
│                                                                              │
│   register_schedule() ─┐                                                     │
│   cancel_schedule()   ─┼─► commands (asyncio.Queue) + wake (asyncio.Event)   │
│   shutdown()          ─┘                   │                                 │
│                                            ▼                                 │
│   ┌────────────────────────────────────────────────────────────────────┐     │
│   │  _run()                                                            │     │
│   │    1. apply commands                                               │     │
│   │    2. top up every schedule to now + horizon                       │     │
│   │    3. earliest <= now ?                                            │     │
│   │         yes: DRAINING  → timer_queue.drain_due(now)                │     │
│   │              DISPATCHING → dispatcher.dispatch(occ) for each       │     │
│   │         no:  WAITING / IDLE → clock.wait_for(wake, timeout)        │     │
│   │              timeout = min(earliest - now, refill_interval)        │     │
│   └────────────────────────────────────────────────────────────────────┘     │
│                                                                              │
│   stop command ─► SHUTTING_DOWN ─► dispatcher.shutdown(grace) ─► STOPPED     │
│                                                                              │
│  A failure inside the loop itself stops the scheduler and is re-raised as   │
│  SchedulerCrashedError from shutdown() / wait_closed(). Task failures never │
│  reach the loop; they end up on the run event stream.                        │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from routecollect.core.errors import DuplicateOccurrenceError, ScheduleError, SchedulerCrashedError
from routecollect.core.logging import get_logger
from routecollect.core.settings import SchedulerSettings

from .clock import SystemClock
from .dispatcher import Dispatcher
from .events import RunEventStream, Subscription
from .models import Occurrence, RunOutcome, Schedule, SchedulerState, TaskRun
from .occurrences import OccurrenceGenerator
from .protocol import Clock, RunListener, TaskExecutor
from .timer_queue import TimerQueue

logger = get_logger(__name__)

DRIFT_WARNING_MS = 1000.0


@dataclass
class SchedulerStats:
    """Statistics for the scheduler loop."""

    wakeups: int = 0
    registered: int = 0
    cancelled: int = 0
    generated: int = 0
    dispatched: int = 0
    duplicates_rejected: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in RunOutcome})
    last_wake: datetime | None = None
    last_error: str | None = None


@dataclass
class SchedulerHealth:
    """Health status for the scheduler service."""

    healthy: bool
    state: SchedulerState
    schedules: int = 0
    active_schedules: int = 0
    pending: int = 0
    in_flight: int = 0
    waiting: int = 0
    retry_pending: int = 0
    next_due: datetime | None = None
    last_wake: datetime | None = None
    drift_ms: float | None = None
    drift_warning: bool = False
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "schedules": self.schedules,
            "active_schedules": self.active_schedules,
            "pending": self.pending,
            "in_flight": self.in_flight,
            "waiting": self.waiting,
            "retry_pending": self.retry_pending,
            "next_due": self.next_due.isoformat() if self.next_due else None,
            "last_wake": self.last_wake.isoformat() if self.last_wake else None,
            "drift_ms": self.drift_ms,
            "drift_warning": self.drift_warning,
            "stats": {
                "wakeups": self.stats.wakeups,
                "registered": self.stats.registered,
                "cancelled": self.stats.cancelled,
                "generated": self.stats.generated,
                "dispatched": self.stats.dispatched,
                "duplicates_rejected": self.stats.duplicates_rejected,
                "outcomes": dict(self.stats.outcomes),
            },
        }


@dataclass
class _Entry:
    schedule: Schedule
    generated_through: datetime
    generated: int = 0
    generation_done: bool = False
    exhausted: bool = False


@dataclass
class _Command:
    kind: str
    payload: Any
    future: asyncio.Future


class SchedulerService:
    """Single-owner scheduler core.

    Example:
        >>> service = SchedulerService(RecordingExecutor(), settings=SchedulerSettings(timezone="America/Chicago"))
        >>> async with service:
        ...     await service.register_schedule(
        ...         Schedule.from_minutes("utsa-to-heb", time(13), time(18), [16])
        ...     )
        ...     async for run in service.subscribe():
        ...         print(run.outcome)
    """

    def __init__(
        self,
        executor: TaskExecutor | Mapping[str, TaskExecutor] | None = None,
        *,
        settings: SchedulerSettings | None = None,
        clock: Clock | None = None,
        dispatcher: Dispatcher | None = None,
        generator: OccurrenceGenerator | None = None,
    ) -> None:
        """Initialize the scheduler service.

        Args:
            executor: Executor (or ``task_kind`` mapping) for a default dispatcher
            settings: Scheduler configuration (defaults read from the environment)
            clock: Wall-clock source (default: system clock)
            dispatcher: Pre-built dispatcher; replaces ``executor``
            generator: Occurrence generator (default: one for ``settings.timezone``)
        """
        if executor is None and dispatcher is None:
            raise ValueError("either an executor or a dispatcher is required")

        self.settings = settings or SchedulerSettings()
        self.clock: Clock = clock or (dispatcher.clock if dispatcher else SystemClock())
        self.generator = generator or OccurrenceGenerator(self.settings.zone)
        if dispatcher is None:
            dispatcher = Dispatcher.from_settings(
                executor, self.settings, clock=self.clock, events=RunEventStream()
            )
        self.dispatcher = dispatcher
        self.events = dispatcher.events

        self.horizon: timedelta = self.settings.horizon
        self.refill_interval: float = self.settings.refill_interval_seconds

        self._queue = TimerQueue()
        self._schedules: dict[str, _Entry] = {}
        self._commands: asyncio.Queue[_Command] = asyncio.Queue()
        self._wake = asyncio.Event()
        self._sequence = itertools.count()
        self._state = SchedulerState.IDLE
        self._task: asyncio.Task | None = None
        self._stop_requested = False
        self._grace_period: float = self.settings.grace_period_seconds
        self._crash: BaseException | None = None
        self._drift_ms: float | None = None
        self._stats = SchedulerStats()

        self.events.add_listener(self._record_run)

    # === Lifecycle ===

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and not self._stop_requested
            and self._crash is None
        )

    async def start(self) -> None:
        """Start the coordinating loop."""
        if self._task is not None:
            logger.warning("scheduler.already_started", state=self._state.value)
            return
        logger.info(
            "scheduler.starting",
            timezone=self.settings.timezone,
            horizon_hours=self.horizon.total_seconds() / 3600,
            max_concurrency=self.dispatcher.max_concurrency,
            clock=getattr(self.clock, "name", type(self.clock).__name__),
        )
        self._task = asyncio.create_task(self._run(), name="routecollect-scheduler")
        await asyncio.sleep(0)

    async def shutdown(self, grace_period: float | None = None) -> None:
        """Stop the loop and wind down the dispatcher.

        In-flight runs get *grace_period* seconds (default from settings)
        before being cancelled and reported INTERRUPTED.

        Raises:
            SchedulerCrashedError: If the loop died on its own
        """
        if self._task is None:
            self._set_state(SchedulerState.STOPPED)
            self.events.close()
            return
        if not self._task.done() and not self._stop_requested and self._crash is None:
            grace = self.settings.grace_period_seconds if grace_period is None else grace_period
            self._stop_requested = True
            self._send("stop", grace)
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """Wait for the loop to exit; raise if it crashed."""
        if self._task is not None:
            await asyncio.wait({self._task})
        if self._crash is not None:
            raise SchedulerCrashedError(
                f"scheduler loop crashed: {self._crash!r}", cause=self._crash
            ) from self._crash

    async def run_until_stopped(self, stop_event: asyncio.Event) -> None:
        """Run until *stop_event* is set (or the loop dies), then shut down."""
        if self._task is None:
            await self.start()
        waiter = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        await self.shutdown()

    async def __aenter__(self) -> SchedulerService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    # === Registration API ===

    async def register_schedule(self, schedule: Schedule) -> None:
        """Register *schedule*; its occurrences are queued before this returns.

        Raises:
            ScheduleError: Duplicate id, or the scheduler is not running
        """
        if not isinstance(schedule, Schedule):
            raise ScheduleError(f"expected a Schedule, got {type(schedule).__name__}")
        await self._call("register", schedule, schedule.schedule_id)

    async def cancel_schedule(self, schedule_id: str) -> int:
        """Cancel a schedule and remove its queued occurrences.

        Returns:
            Number of queued occurrences removed

        Raises:
            ScheduleError: Unknown id, or the scheduler is not running
        """
        return await self._call("cancel", schedule_id, schedule_id)

    async def _call(self, kind: str, payload: Any, schedule_id: str) -> Any:
        if self._crash is not None:
            raise SchedulerCrashedError(f"scheduler loop crashed: {self._crash!r}", cause=self._crash)
        if not self.is_running:
            raise ScheduleError("scheduler is not running", schedule_id=schedule_id)
        return await self._send(kind, payload)

    def _send(self, kind: str, payload: Any) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._commands.put_nowait(_Command(kind, payload, future))
        self._wake.set()
        return future

    # === Observability ===

    @property
    def schedules(self) -> dict[str, Schedule]:
        return {sid: entry.schedule for sid, entry in self._schedules.items()}

    def pending(self, schedule_id: str | None = None) -> list[Occurrence]:
        """Queued occurrences in due order, optionally for one schedule."""
        if schedule_id is not None:
            return self._queue.pending_for(schedule_id)
        return self._queue.snapshot()

    def subscribe(self) -> Subscription:
        """Async iterator over every ``TaskRun`` finalised from now on."""
        return self.events.subscribe()

    def add_listener(self, listener: RunListener):
        return self.events.add_listener(listener)

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def health(self) -> SchedulerHealth:
        """Get scheduler health status."""
        drift_warning = self._drift_ms is not None and self._drift_ms > DRIFT_WARNING_MS
        return SchedulerHealth(
            healthy=self.is_running and self._crash is None,
            state=self._state,
            schedules=len(self._schedules),
            active_schedules=sum(1 for e in self._schedules.values() if not e.exhausted),
            pending=len(self._queue),
            in_flight=self.dispatcher.in_flight,
            waiting=self.dispatcher.waiting,
            retry_pending=self.dispatcher.retry_pending,
            next_due=self._queue.peek_earliest(),
            last_wake=self._stats.last_wake,
            drift_ms=self._drift_ms,
            drift_warning=drift_warning,
            stats=self._stats,
        )

    # === Loop ===

    def _set_state(self, state: SchedulerState) -> None:
        if state is not self._state:
            logger.debug("scheduler.state", previous=self._state.value, state=state.value)
            self._state = state

    async def _run(self) -> None:
        try:
            while True:
                self._wake.clear()
                now = self.clock.now()
                self._apply_commands(now)
                if self._stop_requested:
                    break

                self._top_up(now)
                earliest = self._queue.peek_earliest()
                if earliest is not None and earliest <= now:
                    self._set_state(SchedulerState.DRAINING)
                    due = self._queue.drain_due(now)
                    self._set_state(SchedulerState.DISPATCHING)
                    self._drift_ms = (now - due[0].due_at).total_seconds() * 1000
                    for occurrence in due:
                        self._dispatch(occurrence)
                    continue

                timeout = self._wait_timeout(now, earliest)
                self._set_state(SchedulerState.WAITING if self._schedules else SchedulerState.IDLE)
                await self.clock.wait_for(self._wake, timeout)
                self._stats.wakeups += 1
                self._stats.last_wake = self.clock.now()
        except asyncio.CancelledError:
            self._set_state(SchedulerState.STOPPED)
            raise
        except Exception as exc:
            self._crash = exc
            self._stats.last_error = repr(exc)
            logger.exception("scheduler.crashed", state=self._state.value)
            crashed = SchedulerCrashedError(f"scheduler loop crashed: {exc!r}", cause=exc)
            self._fail_commands(crashed)
            self._set_state(SchedulerState.SHUTTING_DOWN)
            try:
                await self.dispatcher.shutdown(0.0)
            except Exception:
                logger.exception("scheduler.dispatcher_shutdown_failed")
            finally:
                # commands sent while the dispatcher was winding down
                self._fail_commands(crashed)
            self.events.close()
            self._set_state(SchedulerState.STOPPED)
            return

        await self._wind_down()

    async def _wind_down(self) -> None:
        self._set_state(SchedulerState.SHUTTING_DOWN)
        discarded = self._queue.clear()
        self._fail_commands(ScheduleError("scheduler is shutting down"))
        logger.info(
            "scheduler.shutting_down",
            discarded=len(discarded),
            in_flight=self.dispatcher.in_flight,
            grace_period=self._grace_period,
        )
        await self.dispatcher.shutdown(self._grace_period)
        self.events.close()
        self._set_state(SchedulerState.STOPPED)
        logger.info("scheduler.stopped", outcomes=dict(self._stats.outcomes))

    def _wait_timeout(self, now: datetime, earliest: datetime | None) -> float | None:
        if not self._schedules:
            return None
        timeout = self.refill_interval
        if earliest is not None:
            timeout = min(timeout, (earliest - now).total_seconds())
        return max(0.0, timeout)

    def _apply_commands(self, now: datetime) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                return
            if command.future.done():
                continue
            try:
                result = self._apply(command, now)
            except ScheduleError as exc:
                command.future.set_exception(exc)
            else:
                command.future.set_result(result)

    def _apply(self, command: _Command, now: datetime) -> Any:
        if command.kind == "stop":
            self._stop_requested = True
            self._grace_period = command.payload
            return None

        if self._stop_requested:
            raise ScheduleError("scheduler is shutting down")

        if command.kind == "register":
            schedule: Schedule = command.payload
            sid = schedule.schedule_id
            if sid in self._schedules:
                raise ScheduleError(f"schedule {sid!r} is already registered", schedule_id=sid)
            entry = _Entry(schedule=schedule, generated_through=now)
            self._schedules[sid] = entry
            self._stats.registered += 1
            self._top_up_entry(entry, now)
            logger.info(
                "scheduler.registered",
                schedule_id=sid,
                task_kind=schedule.task_kind,
                queued=len(self._queue.pending_for(sid)),
                next_due=(e.isoformat() if (e := self._next_due(sid)) else None),
            )
            return None

        if command.kind == "cancel":
            sid = command.payload
            if sid not in self._schedules:
                raise ScheduleError(f"schedule {sid!r} is not registered", schedule_id=sid)
            removed = self._queue.remove_schedule(sid)
            del self._schedules[sid]
            self._stats.cancelled += 1
            logger.info("scheduler.cancelled", schedule_id=sid, removed=len(removed))
            return len(removed)

        raise ScheduleError(f"unknown command {command.kind!r}")

    def _fail_commands(self, error: Exception) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                return
            if command.future.done():
                continue
            if command.kind == "stop":
                command.future.set_result(None)
            else:
                command.future.set_exception(error)

    def _next_due(self, schedule_id: str) -> datetime | None:
        pending = self._queue.pending_for(schedule_id)
        return pending[0].due_at if pending else None

    # === Generation ===

    def _top_up(self, now: datetime) -> None:
        for entry in self._schedules.values():
            self._top_up_entry(entry, now)

    def _top_up_entry(self, entry: _Entry, now: datetime) -> None:
        if entry.generation_done:
            return
        schedule = entry.schedule
        target = now + self.horizon
        if entry.generated_through >= target:
            return

        instants = self.generator.next_occurrences(
            schedule, entry.generated_through, target - entry.generated_through
        )
        if schedule.max_occurrences is not None:
            remaining = schedule.max_occurrences - entry.generated
            if len(instants) >= remaining:
                instants = instants[:remaining]
                entry.generation_done = True
        if schedule.until is not None and target >= schedule.until:
            entry.generation_done = True

        for due_at in instants:
            occurrence = Occurrence(schedule, due_at, next(self._sequence))
            try:
                self._queue.insert(occurrence)
            except DuplicateOccurrenceError as exc:
                self._stats.duplicates_rejected += 1
                logger.error(
                    "scheduler.duplicate_rejected",
                    schedule_id=exc.schedule_id,
                    due_at=due_at.isoformat(),
                )
                continue
            entry.generated += 1
            self._stats.generated += 1
        entry.generated_through = target

        if instants:
            logger.debug(
                "scheduler.topped_up",
                schedule_id=schedule.schedule_id,
                added=len(instants),
                through=target.isoformat(),
            )
        self._check_exhausted(entry)

    def _check_exhausted(self, entry: _Entry) -> None:
        if entry.exhausted or not entry.generation_done:
            return
        if self._queue.latest_for(entry.schedule.schedule_id) is not None:
            return
        entry.exhausted = True
        logger.info(
            "schedule.exhausted",
            schedule_id=entry.schedule.schedule_id,
            generated=entry.generated,
        )

    # === Dispatch ===

    def _dispatch(self, occurrence: Occurrence) -> None:
        self._stats.dispatched += 1
        self.dispatcher.dispatch(occurrence)
        entry = self._schedules.get(occurrence.schedule_id)
        if entry is not None:
            self._check_exhausted(entry)

    def _record_run(self, run: TaskRun) -> None:
        self._stats.outcomes[run.outcome.value] += 1
        fields = run.to_dict()
        if run.outcome is RunOutcome.SUCCEEDED:
            logger.info("run.finished", **fields)
        else:
            self._stats.last_error = run.error or run.reason
            logger.warning("run.finished", **fields)
