"""Scheduler core for routecollect.

Manifesto:
    Traffic measurements are only worth something when they are taken at
    the instant they claim to describe. The scheduling package fires a
    bounded set of recurring occurrences, anchored to offsets within each
    hour of a daily window, without drift, without duplicates, and without
    letting one slow or failing query hold up its siblings.

┌──────────────────────────────────────────────────────────────────────────────┐
│  ROUTECOLLECT SCHEDULER                                                      │
│                                                                              │
│  Quick Start:                                                                │
│  ┌──────────────────────────────────────────────────────────────────────┐    │
│  │   from routecollect.scheduling import (                              │    │
│  │       Schedule, SchedulerService, LoggingExecutor,                   │    │
│  │   )                                                                  │    │
│  │                                                                      │    │
│  │   async with SchedulerService(LoggingExecutor()) as service:         │    │
│  │       await service.register_schedule(                               │    │
│  │           Schedule.from_minutes("utsa-to-heb", time(13), time(18),   │    │
│  │                                 [16]),                               │    │
│  │       )                                                              │    │
│  │       async for run in service.subscribe():                          │    │
│  │           ...                                                        │    │
│  └──────────────────────────────────────────────────────────────────────┘    │
│                                                                              │
│  Components (leaf first):                                                    │
│   clock.py        SystemClock / OffsetClock / ManualClock                    │
│   models.py       Schedule, Occurrence, TaskRun, RunOutcome, SchedulerState  │
│   occurrences.py  OccurrenceGenerator (pure, DST-aware)                      │
│   timer_queue.py  TimerQueue (heap + uniqueness index)                       │
│   retry.py        RetryPolicy + backoff strategies                           │
│   events.py       RunEventStream (observability hook)                        │
│   dispatcher.py   Dispatcher (ceiling, FIFO, staleness, timeouts, retries)   │
│   service.py      SchedulerService (the coordinating loop)                   │
│   executors.py    LoggingExecutor, RecordingExecutor, load_executor          │
│   loader.py       ScheduleSet YAML files                                     │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from routecollect.scheduling.clock import ManualClock, OffsetClock, SystemClock
from routecollect.scheduling.dispatcher import Dispatcher, DispatcherStats
from routecollect.scheduling.events import RunEventStream, Subscription
from routecollect.scheduling.executors import LoggingExecutor, RecordingExecutor, load_executor
from routecollect.scheduling.loader import load_schedules, load_schedules_from_yaml
from routecollect.scheduling.models import (
    Occurrence,
    RunOutcome,
    Schedule,
    SchedulerState,
    TaskRun,
)
from routecollect.scheduling.occurrences import OccurrenceGenerator, resolve_wall_time
from routecollect.scheduling.protocol import Clock, RunListener, TaskExecutor
from routecollect.scheduling.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    NoRetry,
    RetryDecision,
    RetryPolicy,
    RetryStrategy,
)
from routecollect.scheduling.service import SchedulerHealth, SchedulerService, SchedulerStats
from routecollect.scheduling.timer_queue import TimerQueue

__all__ = [
    # Clocks
    "Clock",
    "ManualClock",
    "OffsetClock",
    "SystemClock",
    # Models
    "Occurrence",
    "RunOutcome",
    "Schedule",
    "SchedulerState",
    "TaskRun",
    # Core
    "Dispatcher",
    "DispatcherStats",
    "OccurrenceGenerator",
    "RunEventStream",
    "RunListener",
    "SchedulerHealth",
    "SchedulerService",
    "SchedulerStats",
    "Subscription",
    "TaskExecutor",
    "TimerQueue",
    "resolve_wall_time",
    # Retry
    "ConstantBackoff",
    "ExponentialBackoff",
    "NoRetry",
    "RetryDecision",
    "RetryPolicy",
    "RetryStrategy",
    # Executors & loading
    "LoggingExecutor",
    "RecordingExecutor",
    "load_executor",
    "load_schedules",
    "load_schedules_from_yaml",
]
