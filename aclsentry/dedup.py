"""
dedup.py — Deduplication of watch notifications.

A single creation usually produces a burst of notifications (created,
several modified, sometimes a rename).  The deduplicator admits the first
one and rejects the rest while the path is being handled and for a short
retention window afterwards.

Entries that are still in flight are never evicted, so two workers can
never normalise the same path at once.  Released entries expire after
``ttl`` seconds, and the oldest released entries are dropped once the map
grows beyond ``max_entries``.
"""

from __future__ import annotations

import os
import threading
import time
from collections import OrderedDict
from typing import Callable


class EventDeduplicator:
    """Lock-guarded, time-bounded set of claimed paths."""

    def __init__(
        self,
        ttl: float = 10.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        # path -> release time, oldest first
        self._released: OrderedDict[str, float] = OrderedDict()
        self._hits = 0

    @staticmethod
    def key(path: str) -> str:
        return os.path.normcase(os.path.abspath(path))

    def should_process(self, path: str) -> bool:
        """Claim *path*.  Returns ``False`` if it is already claimed."""
        key = self.key(path)
        with self._lock:
            self._evict(self._clock())
            if key in self._in_flight or key in self._released:
                self._hits += 1
                return False
            self._in_flight.add(key)
            return True

    def release(self, path: str) -> None:
        """Mark handling of *path* as finished; the retention window starts now."""
        key = self.key(path)
        with self._lock:
            self._in_flight.discard(key)
            self._released[key] = self._clock()
            self._released.move_to_end(key)
            while len(self._released) > self.max_entries:
                self._released.popitem(last=False)

    def forget(self, path: str) -> None:
        """Drop *path* entirely so the next notification is admitted."""
        key = self.key(path)
        with self._lock:
            self._in_flight.discard(key)
            self._released.pop(key, None)

    def _evict(self, now: float) -> None:
        cutoff = now - self.ttl
        while self._released:
            key, released_at = next(iter(self._released.items()))
            if released_at > cutoff:
                break
            self._released.popitem(last=False)

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "in_flight": len(self._in_flight),
                "retained": len(self._released),
                "dedup_hits": self._hits,
            }
