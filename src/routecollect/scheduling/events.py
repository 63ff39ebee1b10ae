"""Run events: the scheduler's observability hook.

WHY
───
The scheduler keeps no run history; persistence of query results belongs to
the executor. What operators still need is one record per finalised run
(success, exhausted retries, fatal failure, overrun, interruption) for logs
and metrics. ``RunEventStream`` fans each ``TaskRun`` out to synchronous
listeners and to any number of async subscribers.

ARCHITECTURE
────────────
::

    Dispatcher ──publish(TaskRun)──► RunEventStream
                                       ├── listeners  (called inline)
                                       └── subscribers (asyncio.Queue each)
                                              └── async for run in stream.subscribe()

Related modules:
    dispatcher.py: the only publisher
    service.py   : attaches the structlog listener, closes the stream on stop
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

from routecollect.core.logging import get_logger

from .models import TaskRun
from .protocol import RunListener

logger = get_logger(__name__)

_CLOSED = object()


class RunEventStream:
    """Fan-out of finalised ``TaskRun`` records.

    Example:
        >>> stream = RunEventStream()
        >>> remove = stream.add_listener(lambda run: print(run.outcome))
        >>> async for run in stream.subscribe():  # registered before the first await
        ...     handle(run)
    """

    def __init__(self, buffer_size: int = 1000) -> None:
        self._listeners: list[RunListener] = []
        self._subscribers: list[asyncio.Queue] = []
        self._buffer_size = buffer_size
        self._closed = False
        self.published = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: RunListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it again."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def publish(self, run: TaskRun) -> None:
        self.published += 1
        for listener in list(self._listeners):
            try:
                listener(run)
            except Exception:
                logger.exception("events.listener_failed", listener=repr(listener))

        if self._closed:
            return
        for queue in self._subscribers:
            if queue.qsize() >= self._buffer_size:
                dropped = queue.get_nowait()
                logger.warning(
                    "events.subscriber_lagging",
                    dropped_schedule_id=dropped.schedule_id if isinstance(dropped, TaskRun) else None,
                )
            queue.put_nowait(run)

    def subscribe(self) -> Subscription:
        """Subscribe to runs published from this call on, until the stream closes."""
        queue: asyncio.Queue = asyncio.Queue()
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._subscribers.append(queue)
        return Subscription(self, queue)

    def _unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def close(self) -> None:
        """End every subscription after the runs already queued for it."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)


class Subscription(AsyncIterator[TaskRun]):
    """Async iterator over the runs delivered to one subscriber."""

    def __init__(self, stream: RunEventStream, queue: asyncio.Queue) -> None:
        self._stream = stream
        self._queue = queue
        self._done = False

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> TaskRun:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._done = True
        self._stream._unsubscribe(self._queue)

    def pending(self) -> int:
        """Runs delivered but not yet consumed."""
        return self._queue.qsize()
