"""Delayed removal of pod identifiers.

A delete notification can race an add for a different pod that reuses the
same address right after teardown.  Removals are therefore queued and only
applied once they are older than a grace period, and the table entry is only
dropped if it still names the deleted pod.

Timestamps are ``time.monotonic()`` seconds, so wall-clock steps can neither
evict early nor stall the queue.
"""

from __future__ import annotations

import threading
import time
from collections import deque

from kubemeta.models.resources import DeleteRequest, PodIdentifier


class EvictionQueue:
    """Time-ordered queue of pending :class:`DeleteRequest` objects.

    Guarded by its own lock, separate from the cache lock, so frequent
    enqueues do not hold up lookups.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: deque[DeleteRequest] = deque()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def append(self, identifier: PodIdentifier, pod_name: str, ts: float | None = None) -> None:
        if ts is None:
            ts = time.monotonic()
        request = DeleteRequest(identifier=identifier, pod_name=pod_name, ts=ts)
        with self._lock:
            self._queue.append(request)

    def pop_expired(self, grace_period: float, now: float | None = None) -> list[DeleteRequest]:
        """Dequeue every request at least *grace_period* seconds old.

        The scan stops at the first request still inside its grace period;
        requests are enqueued in timestamp order so nothing behind it is due.
        """
        if now is None:
            now = time.monotonic()
        expired: list[DeleteRequest] = []
        with self._lock:
            while self._queue and self._queue[0].ts + grace_period <= now:
                expired.append(self._queue.popleft())
        return expired
