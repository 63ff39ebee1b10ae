"""Bundled task executors.

The real executor (routing query + persistence write) lives outside this
package and is wired in with ``load_executor("package.module:attr")``. The
two bundled ones cover dry runs and tests.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import time
from collections import defaultdict, deque
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from routecollect.core.errors import ConfigError
from routecollect.core.logging import get_logger

from .protocol import TaskExecutor

logger = get_logger(__name__)


class LoggingExecutor:
    """Dry-run executor: logs each occurrence and succeeds."""

    def __init__(self, event: str = "executor.dry_run") -> None:
        self.event = event
        self.calls = 0

    async def execute(self, schedule_id: str, due_at: datetime) -> None:
        self.calls += 1
        logger.info(self.event, schedule_id=schedule_id, due_at=due_at.isoformat())


@dataclass(frozen=True)
class ExecutorCall:
    """One recorded ``execute`` call."""

    schedule_id: str
    due_at: datetime
    started: float
    finished: float | None = None


class RecordingExecutor:
    """In-memory executor that records calls and can be scripted to fail.

    Args:
        delay: Seconds each call takes (real asyncio time)
        failures: Per schedule id, exceptions raised by successive calls;
            once a script runs out, calls succeed
        gate: When given, every call waits for this event before returning

    Example:
        >>> executor = RecordingExecutor(failures={"s": [RetryableExecutorError("503")] * 3})
        >>> await executor.execute("s", due_at)  # raises RetryableExecutorError
        >>> executor.count("s")
        1
    """

    def __init__(
        self,
        *,
        delay: float = 0.0,
        failures: dict[str, Iterable[BaseException]] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.delay = delay
        self.gate = gate
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        for schedule_id, errors in (failures or {}).items():
            self._failures[schedule_id].extend(errors)
        self.calls: list[ExecutorCall] = []
        self.completed: list[ExecutorCall] = []
        self.active = 0
        self.max_active = 0

    def fail_next(self, schedule_id: str, *errors: BaseException) -> None:
        """Queue *errors* for the next calls of *schedule_id*."""
        self._failures[schedule_id].extend(errors)

    async def execute(self, schedule_id: str, due_at: datetime) -> None:
        call = ExecutorCall(schedule_id, due_at, started=time.monotonic())
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.gate is not None:
                await self.gate.wait()
            script = self._failures.get(schedule_id)
            if script:
                raise script.popleft()
        finally:
            self.active -= 1
        self.completed.append(
            ExecutorCall(schedule_id, due_at, started=call.started, finished=time.monotonic())
        )

    def count(self, schedule_id: str | None = None) -> int:
        if schedule_id is None:
            return len(self.calls)
        return sum(1 for c in self.calls if c.schedule_id == schedule_id)

    def due_instants(self, schedule_id: str) -> list[datetime]:
        """Due instants passed to ``execute`` for *schedule_id*, in call order."""
        return [c.due_at for c in self.calls if c.schedule_id == schedule_id]


def load_executor(ref: str, **kwargs: Any) -> TaskExecutor:
    """Import an executor from ``'package.module:attr'``.

    ``attr`` may be an executor instance, or a class / factory that is called
    with *kwargs* to build one.

    Raises:
        ConfigError: If the reference is malformed, cannot be imported, or
            does not resolve to something with an async ``execute`` method.
    """
    module_path, _, attr_path = ref.partition(":")
    if not module_path or not attr_path:
        raise ConfigError(f"Invalid executor reference (expected 'module:attr'): {ref!r}", ref=ref)

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigError(f"Cannot import executor module {module_path!r}: {e}", cause=e, ref=ref) from e

    obj: Any = module
    try:
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except AttributeError as e:
        raise ConfigError(f"{ref!r} not found: {e}", cause=e, ref=ref) from e

    if inspect.isclass(obj) or not hasattr(obj, "execute"):
        if not callable(obj):
            raise ConfigError(f"{ref!r} is neither an executor nor a factory", ref=ref)
        try:
            obj = obj(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Cannot build executor from {ref!r}: {e}", cause=e, ref=ref) from e

    if not inspect.iscoroutinefunction(getattr(obj, "execute", None)):
        raise ConfigError(f"{ref!r} has no async execute(schedule_id, due_at) method", ref=ref)

    logger.debug("executors.loaded", ref=ref, executor=type(obj).__name__)
    return obj
