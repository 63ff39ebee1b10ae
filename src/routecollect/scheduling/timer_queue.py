"""Timer queue: pending occurrences ordered by due instant.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TIMER QUEUE                                                                 │
│                                                                              │
│   heap:  [(due_at, sequence, Occurrence), ...]   min-ordered                 │
│   index: {(schedule_id, due_at): Occurrence}      uniqueness                 │
│                                                                              │
│   insert(occ)        O(log n)   DuplicateOccurrenceError on key clash        │
│   peek_earliest()    O(1)       nearest due instant, nothing removed         │
│   drain_due(now)     O(k log n) remove + return everything due ≤ now         │
│   remove_schedule()  O(n)       cancellation                                 │
│                                                                              │
│  All operations take the same lock, so drain_due is atomic with respect to   │
│  insert: an occurrence inserted concurrently is either part of the drained   │
│  batch (correctly ordered) or stays queued for the next drain.               │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import heapq
import threading
from datetime import datetime

from routecollect.core.errors import DuplicateOccurrenceError

from .models import Occurrence


class TimerQueue:
    """Min-ordered queue of occurrences keyed on (schedule_id, due_at).

    Example:
        >>> queue = TimerQueue()
        >>> queue.insert(occurrence)
        >>> queue.peek_earliest()
        datetime.datetime(2024, 3, 5, 14, 0, tzinfo=datetime.timezone.utc)
        >>> queue.drain_due(now)
        [Occurrence('utsa-to-heb', 2024-03-05T14:00:00+00:00, seq=0)]
    """

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, Occurrence]] = []
        self._index: dict[tuple[str, datetime], Occurrence] = {}
        self._lock = threading.Lock()

    def insert(self, occurrence: Occurrence) -> None:
        """Queue *occurrence*; raises DuplicateOccurrenceError if its key is already queued."""
        with self._lock:
            if occurrence.key in self._index:
                raise DuplicateOccurrenceError(occurrence.schedule_id, occurrence.due_at)
            self._index[occurrence.key] = occurrence
            heapq.heappush(self._heap, (occurrence.due_at, occurrence.sequence, occurrence))

    def peek_earliest(self) -> datetime | None:
        """Nearest due instant, or None when the queue is empty."""
        with self._lock:
            return self._heap[0][0] if self._heap else None

    def drain_due(self, now: datetime) -> list[Occurrence]:
        """Remove and return every occurrence due at or before *now*.

        Ordered by due instant, then sequence number.
        """
        drained: list[Occurrence] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, occurrence = heapq.heappop(self._heap)
                del self._index[occurrence.key]
                drained.append(occurrence)
        return drained

    def remove_schedule(self, schedule_id: str) -> list[Occurrence]:
        """Remove all pending occurrences of *schedule_id*; returns them in due order."""
        with self._lock:
            removed = sorted(e[2] for e in self._heap if e[2].schedule_id == schedule_id)
            if removed:
                self._heap = [e for e in self._heap if e[2].schedule_id != schedule_id]
                heapq.heapify(self._heap)
                for occurrence in removed:
                    del self._index[occurrence.key]
        return removed

    def pending_for(self, schedule_id: str) -> list[Occurrence]:
        """Pending occurrences of one schedule, in due order."""
        with self._lock:
            return sorted(e[2] for e in self._heap if e[2].schedule_id == schedule_id)

    def latest_for(self, schedule_id: str) -> datetime | None:
        with self._lock:
            dues = [e[0] for e in self._heap if e[2].schedule_id == schedule_id]
        return max(dues) if dues else None

    def snapshot(self) -> list[Occurrence]:
        """All pending occurrences in due order, without removing them."""
        with self._lock:
            return sorted(e[2] for e in self._heap)

    def clear(self) -> list[Occurrence]:
        with self._lock:
            removed = sorted(e[2] for e in self._heap)
            self._heap.clear()
            self._index.clear()
        return removed

    def __contains__(self, key: object) -> bool:
        if isinstance(key, Occurrence):
            key = key.key
        with self._lock:
            return key in self._index

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

    def __bool__(self) -> bool:
        return len(self) > 0
