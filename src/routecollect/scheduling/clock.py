"""Clock implementations.

``SystemClock`` is the production clock. ``OffsetClock`` runs in real time
but starts at an arbitrary instant, so a test can place "now" a few hundred
milliseconds before an occurrence and watch the real loop fire it.
``ManualClock`` never moves on its own; tests advance it explicitly and every
pending ``wait_for`` re-evaluates its deadline.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"clock instants must be timezone-aware, got {value!r}")
    return value


class SystemClock:
    """Wall-clock time from the operating system."""

    name = "system"

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def wait_for(self, event: asyncio.Event, timeout: float | None) -> bool:
        if event.is_set():
            return True
        if timeout is not None and timeout <= 0:
            return False
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except TimeoutError:
            return event.is_set()
        return True

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class OffsetClock(SystemClock):
    """Real-time clock whose ``now()`` starts at *start*."""

    name = "offset"

    def __init__(self, start: datetime) -> None:
        self._start = _require_aware(start).astimezone(UTC)
        self._origin = time.monotonic()

    def now(self) -> datetime:
        return self._start + timedelta(seconds=time.monotonic() - self._origin)


class ManualClock:
    """Clock that only moves when told to.

    Example:
        >>> clock = ManualClock(datetime(2024, 3, 4, 8, 0, tzinfo=UTC))
        >>> clock.advance(timedelta(minutes=15))
        >>> clock.now().minute
        15
    """

    name = "manual"

    def __init__(self, start: datetime) -> None:
        self._now = _require_aware(start).astimezone(UTC)
        self._moved = asyncio.Event()

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        """Jump to *instant* (may not move backwards)."""
        instant = _require_aware(instant).astimezone(UTC)
        if instant < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = instant
        moved, self._moved = self._moved, asyncio.Event()
        moved.set()

    def advance(self, delta: timedelta | float) -> None:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self.set(self._now + delta)

    async def wait_for(self, event: asyncio.Event, timeout: float | None) -> bool:
        deadline = None if timeout is None else self._now + timedelta(seconds=timeout)
        while not event.is_set():
            if deadline is not None and self._now >= deadline:
                return False
            waiters = {
                asyncio.ensure_future(event.wait()),
                asyncio.ensure_future(self._moved.wait()),
            }
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()
        return True

    async def sleep(self, seconds: float) -> None:
        await self.wait_for(asyncio.Event(), seconds)
