"""Dispatcher: bounded, staleness-aware execution of due occurrences.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DISPATCHER                                                                  │
│                                                                              │
│   dispatch(occ) ──► waiting FIFO (queue_capacity) ──► worker slots           │
│                      │ overflow: oldest dropped         (max_concurrency)    │
│                      ▼ as OVERRUN "queue-overflow"          │                │
│                                                             ▼                │
│                     slot frees ──► stale? ── yes ──► OVERRUN "stale"         │
│                                      │                                       │
│                                      no                                      │
│                                      ▼                                       │
│                     asyncio.timeout(attempt_timeout):                        │
│                         await executor.execute(schedule_id, due_at)          │
│                                      │                                       │
│             ┌────────────────────────┼──────────────────────────┐            │
│             ▼                        ▼                          ▼            │
│         SUCCEEDED              retryable failure           fatal failure     │
│                                      │                     FAILED_FATAL      │
│                     RetryPolicy.decide(attempts, deadline)                   │
│                        │ retry: slot released, backoff via clock.sleep,      │
│                        │        then back into the FIFO                      │
│                        └ give up: FAILED_RETRYABLE (retry-exhausted /        │
│                                   retry-past-staleness)                      │
│                                                                              │
│  shutdown(grace): waiting + backing-off → INTERRUPTED immediately;           │
│                   running get up to `grace` seconds, then are cancelled      │
│                   and reported INTERRUPTED.                                  │
└──────────────────────────────────────────────────────────────────────────────┘

Every occurrence handed to ``dispatch`` produces exactly one ``TaskRun`` on the
event stream.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from routecollect.core.errors import (
    ConfigError,
    InterruptedRunError,
    OverrunError,
    RouteCollectError,
    categorize_error,
    is_retryable,
)
from routecollect.core.logging import LogContext, get_logger

from .clock import SystemClock
from .events import RunEventStream
from .models import Occurrence, RunOutcome, TaskRun
from .protocol import Clock, TaskExecutor
from .retry import ExponentialBackoff, RetryPolicy

if TYPE_CHECKING:
    from routecollect.core.settings import SchedulerSettings

logger = get_logger(__name__)

DEFAULT_KIND = "*"


@dataclass
class _Job:
    occurrence: Occurrence
    attempts: int = 0
    started_at: datetime | None = None
    finalized: bool = False


@dataclass
class DispatcherStats:
    """Counters for dispatcher activity."""

    dispatched: int = 0
    attempts: int = 0
    retries: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in RunOutcome})

    def to_dict(self) -> dict[str, object]:
        return {
            "dispatched": self.dispatched,
            "attempts": self.attempts,
            "retries": self.retries,
            "outcomes": dict(self.outcomes),
        }


class Dispatcher:
    """Runs due occurrences on a bounded set of asyncio worker tasks.

    Args:
        executor: A ``TaskExecutor``, or a mapping of ``task_kind`` to executor
            (key ``"*"`` is the fallback)
        clock: Wall-clock source used for staleness and backoff
        events: Stream receiving one ``TaskRun`` per dispatched occurrence
        max_concurrency: Attempts allowed to run at once
        queue_capacity: Due occurrences allowed to wait for a free slot
        staleness: Default staleness threshold (schedules may override)
        attempt_timeout: Seconds allowed per executor call
        retry_policy: Attempt limit and backoff for retryable failures
    """

    def __init__(
        self,
        executor: TaskExecutor | Mapping[str, TaskExecutor],
        *,
        clock: Clock | None = None,
        events: RunEventStream | None = None,
        max_concurrency: int = 4,
        queue_capacity: int = 16,
        staleness: timedelta = timedelta(minutes=5),
        attempt_timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        if attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")

        self._executors: Mapping[str, TaskExecutor] = (
            executor if isinstance(executor, Mapping) else {DEFAULT_KIND: executor}
        )
        self.clock: Clock = clock or SystemClock()
        self.events = events or RunEventStream()
        self.max_concurrency = max_concurrency
        self.queue_capacity = queue_capacity
        self.staleness = staleness
        self.attempt_timeout = attempt_timeout
        self.retry_policy = retry_policy or RetryPolicy(ExponentialBackoff(), max_attempts=3)

        self._waiting: deque[_Job] = deque()
        self._running: dict[asyncio.Task, _Job] = {}
        self._retrying: dict[asyncio.Task, _Job] = {}
        self._accepting = True
        self._idle = asyncio.Event()
        self._idle.set()
        self._last_now = datetime.min.replace(tzinfo=UTC)
        self.stats = DispatcherStats()

    @classmethod
    def from_settings(
        cls,
        executor: TaskExecutor | Mapping[str, TaskExecutor],
        settings: SchedulerSettings,
        *,
        clock: Clock | None = None,
        events: RunEventStream | None = None,
    ) -> Dispatcher:
        return cls(
            executor,
            clock=clock,
            events=events,
            max_concurrency=settings.max_concurrency,
            queue_capacity=settings.queue_capacity,
            staleness=settings.staleness,
            attempt_timeout=settings.attempt_timeout_seconds,
            retry_policy=settings.retry_policy(),
        )

    # === Introspection ===

    @property
    def in_flight(self) -> int:
        return len(self._running)

    @property
    def waiting(self) -> int:
        return len(self._waiting)

    @property
    def retry_pending(self) -> int:
        return len(self._retrying)

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def idle(self) -> bool:
        return not (self._waiting or self._running or self._retrying)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until nothing is waiting, running or backing off."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except TimeoutError:
            return False
        return True

    # === Dispatch ===

    def dispatch(self, occurrence: Occurrence) -> None:
        """Hand *occurrence* to the dispatcher; never blocks."""
        self.stats.dispatched += 1
        job = _Job(occurrence)
        if not self._accepting:
            self._interrupt(job, "shutting-down")
            return
        self._enqueue(job)

    def _enqueue(self, job: _Job) -> None:
        if len(self._waiting) >= self.queue_capacity:
            dropped = self._waiting.popleft()
            logger.warning(
                "dispatcher.queue_overflow",
                schedule_id=dropped.occurrence.schedule_id,
                due_at=dropped.occurrence.due_at.isoformat(),
                capacity=self.queue_capacity,
            )
            self._finalize(
                dropped,
                RunOutcome.OVERRUN,
                reason="queue-overflow",
                error=OverrunError(
                    f"dropped after {self.queue_capacity} newer occurrences queued behind it",
                    schedule_id=dropped.occurrence.schedule_id,
                ),
            )
        self._waiting.append(job)
        self._pump()

    def _pump(self) -> None:
        while self._accepting and self._waiting and len(self._running) < self.max_concurrency:
            job = self._waiting.popleft()
            occurrence = job.occurrence
            now = self._now()
            if now > occurrence.staleness_deadline(self.staleness):
                late = now - occurrence.due_at
                logger.warning(
                    "dispatcher.overrun",
                    schedule_id=occurrence.schedule_id,
                    due_at=occurrence.due_at.isoformat(),
                    late_seconds=round(late.total_seconds(), 3),
                )
                self._finalize(
                    job,
                    RunOutcome.OVERRUN,
                    reason="stale",
                    error=OverrunError(
                        f"worker free {late.total_seconds():.0f}s after due instant",
                        schedule_id=occurrence.schedule_id,
                    ),
                )
                continue

            task = asyncio.create_task(
                self._run_attempt(job),
                name=f"routecollect:{occurrence.schedule_id}:{occurrence.sequence}",
            )
            self._running[task] = job
            task.add_done_callback(self._on_attempt_done)
        self._update_idle()

    def _resolve_executor(self, task_kind: str) -> TaskExecutor | None:
        return self._executors.get(task_kind) or self._executors.get(DEFAULT_KIND)

    async def _run_attempt(self, job: _Job) -> None:
        occurrence = job.occurrence
        job.attempts += 1
        self.stats.attempts += 1
        if job.started_at is None:
            job.started_at = self._now()

        executor = self._resolve_executor(occurrence.schedule.task_kind)
        if executor is None:
            self._finalize(
                job,
                RunOutcome.FAILED_FATAL,
                reason="no-executor",
                error=ConfigError(
                    f"no executor registered for task kind {occurrence.schedule.task_kind!r}",
                    task_kind=occurrence.schedule.task_kind,
                ),
            )
            return

        async with LogContext(
            schedule_id=occurrence.schedule_id,
            due_at=occurrence.due_at.isoformat(),
            attempt=job.attempts,
        ):
            logger.debug("dispatcher.attempt_started")
            try:
                async with asyncio.timeout(self.attempt_timeout):
                    await executor.execute(occurrence.schedule_id, occurrence.due_at)
            except TimeoutError as exc:
                if not str(exc):
                    exc = TimeoutError(f"attempt timed out after {self.attempt_timeout}s")
                self._handle_failure(job, exc, retryable=True)
                return
            except asyncio.CancelledError:
                self._interrupt(job, "cancelled")
                raise
            except Exception as exc:
                self._handle_failure(job, exc, retryable=is_retryable(exc))
                return

        self._finalize(job, RunOutcome.SUCCEEDED)

    def _handle_failure(self, job: _Job, exc: BaseException, *, retryable: bool) -> None:
        occurrence = job.occurrence
        if not retryable:
            self._finalize(job, RunOutcome.FAILED_FATAL, reason="executor-fatal", error=exc)
            return

        now = self._now()
        decision = self.retry_policy.decide(job.attempts, now, occurrence.staleness_deadline(self.staleness))
        if not decision.retry:
            self._finalize(job, RunOutcome.FAILED_RETRYABLE, reason=decision.reason, error=exc)
            return
        if not self._accepting:
            self._interrupt(job, "shutdown-before-retry", cause=exc)
            return

        self.stats.retries += 1
        logger.warning(
            "dispatcher.retry_scheduled",
            schedule_id=occurrence.schedule_id,
            due_at=occurrence.due_at.isoformat(),
            attempts=job.attempts,
            delay_seconds=round(decision.delay, 3),
            error=_describe(exc),
        )
        task = asyncio.create_task(self._retry_later(job, decision.delay))
        self._retrying[task] = job
        task.add_done_callback(self._on_retry_done)

    async def _retry_later(self, job: _Job, delay: float) -> None:
        await self.clock.sleep(delay)
        self._retrying.pop(asyncio.current_task(), None)
        if job.finalized:
            return
        if not self._accepting:
            self._interrupt(job, "shutdown-during-backoff")
            return
        self._enqueue(job)

    def _on_attempt_done(self, task: asyncio.Task) -> None:
        job = self._running.pop(task, None)
        if job is not None and not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            logger.error("dispatcher.worker_crashed", schedule_id=job.occurrence.schedule_id, error=repr(exc))
            self._finalize(job, RunOutcome.FAILED_FATAL, reason="worker-crashed", error=exc)
        self._pump()

    def _on_retry_done(self, task: asyncio.Task) -> None:
        self._retrying.pop(task, None)
        self._update_idle()

    def _update_idle(self) -> None:
        if self.idle:
            self._idle.set()
        else:
            self._idle.clear()

    def _now(self) -> datetime:
        try:
            self._last_now = self.clock.now()
        except Exception as exc:
            logger.error("dispatcher.clock_failed", error=repr(exc))
            return max(self._last_now, datetime.now(UTC))
        return self._last_now

    def _interrupt(self, job: _Job, reason: str, *, cause: BaseException | None = None) -> None:
        error = InterruptedRunError(
            f"run interrupted ({reason})", schedule_id=job.occurrence.schedule_id, cause=cause
        )
        self._finalize(job, RunOutcome.INTERRUPTED, reason=reason, error=error)

    def _finalize(
        self,
        job: _Job,
        outcome: RunOutcome,
        *,
        reason: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        if job.finalized:
            return
        run = TaskRun(
            occurrence=job.occurrence,
            outcome=outcome,
            attempts=job.attempts,
            ended_at=self._now(),
            started_at=job.started_at,
            error=_describe(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            error_category=categorize_error(error).value if error is not None else None,
            reason=reason,
        )
        self.stats.outcomes[outcome.value] += 1
        self.events.publish(run)
        job.finalized = True

    # === Shutdown ===

    async def shutdown(self, grace_period: float = 10.0) -> None:
        """Stop accepting work and wind down.

        Occurrences still waiting for a slot and retries still backing off are
        reported INTERRUPTED at once. Running attempts get *grace_period*
        seconds to finish; the rest are cancelled and reported INTERRUPTED.
        """
        self._accepting = False

        while self._waiting:
            self._interrupt(self._waiting.popleft(), "shutdown-before-start")

        backing_off = list(self._retrying.items())
        try:
            for _, job in backing_off:
                self._interrupt(job, "shutdown-during-backoff")
        finally:
            for task, _ in backing_off:
                task.cancel()

        running = list(self._running)
        if running:
            logger.info("dispatcher.draining", in_flight=len(running), grace_period=grace_period)
            _, pending = await asyncio.wait(running, timeout=grace_period)
            try:
                for task in pending:
                    job = self._running.get(task)
                    if job is not None:
                        self._interrupt(job, "shutdown-grace-expired")
            finally:
                for task in pending:
                    task.cancel()
            if pending:
                logger.warning("dispatcher.abandoned", count=len(pending))
                await asyncio.wait(pending, timeout=1.0)

        if backing_off:
            await asyncio.gather(*(task for task, _ in backing_off), return_exceptions=True)
        self._update_idle()


def _describe(error: BaseException) -> str:
    if isinstance(error, RouteCollectError):
        return f"{type(error).__name__}: {error.message}"
    return f"{type(error).__name__}: {error}"
