"""Scheduler collaborator protocols.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER COLLABORATORS                                                     │
│                                                                              │
│   ┌──────────────┐   now() / wait_for()   ┌──────────────────────────┐       │
│   │    Clock     │ ◄───────────────────── │     SchedulerService     │       │
│   └──────────────┘                        │  (single coordinating    │       │
│                                           │   asyncio task)          │       │
│   ┌──────────────┐  execute(id, due_at)   └────────────┬─────────────┘       │
│   │ TaskExecutor │ ◄──────────────────────  Dispatcher ◄┘                    │
│   └──────────────┘                                                           │
│                                                                              │
│  Responsibility Split:                                                       │
│  - Clock: the only source of wall-clock time, swappable in tests             │
│  - TaskExecutor: the routing query + persistence write, opaque to the core   │
│  - RunListener: receives one TaskRun per finalised run                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import TaskRun


@runtime_checkable
class Clock(Protocol):
    """Source of wall-clock time for the scheduler.

    ``now()`` must return a timezone-aware datetime. ``wait_for`` is the
    scheduler's only wall-clock suspension point: it returns ``True`` as soon
    as *event* is set, or ``False`` once *timeout* seconds of this clock's time
    have elapsed. ``timeout=None`` waits for the event alone.
    """

    def now(self) -> datetime:
        ...

    async def wait_for(self, event: asyncio.Event, timeout: float | None) -> bool:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


@runtime_checkable
class TaskExecutor(Protocol):
    """Performs the work behind one occurrence.

    Implementations query the routing data source and persist the result.
    Success is a normal return. Failures raise
    :class:`~routecollect.core.errors.ExecutorFailure` with ``retryable`` set
    accordingly; any other exception is classified by
    :func:`~routecollect.core.errors.is_retryable`. The call must tolerate
    cancellation, which is how timeouts and forced shutdown reach it.
    """

    async def execute(self, schedule_id: str, due_at: datetime) -> None:
        ...


RunListener = Callable[["TaskRun"], None]
