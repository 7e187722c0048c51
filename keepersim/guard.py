"""Concurrency helpers shared by the jobs.

``ExecutionGuard`` is a single-flight flag: a caller that finds it held skips
its work instead of waiting. ``DedupCache`` remembers which log events a job
has already acted on.
"""

from __future__ import annotations

import threading


class ExecutionGuard:
    def __init__(self):
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()


EventId = tuple[str, int]


class DedupCache:
    """Processed and in-flight event ids for one log job.

    An id is claimed when its handling starts. It is either committed after a
    confirmed perform, and then never claimable again, or released so a later
    delivery can be evaluated afresh.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processed: set[EventId] = set()
        self._in_flight: set[EventId] = set()

    def __contains__(self, event_id: EventId) -> bool:
        return event_id in self._processed

    def __len__(self) -> int:
        return len(self._processed)

    def claim(self, event_id: EventId) -> bool:
        with self._lock:
            if event_id in self._processed or event_id in self._in_flight:
                return False
            self._in_flight.add(event_id)
            return True

    def commit(self, event_id: EventId) -> None:
        with self._lock:
            self._in_flight.discard(event_id)
            self._processed.add(event_id)

    def release(self, event_id: EventId) -> None:
        with self._lock:
            self._in_flight.discard(event_id)
