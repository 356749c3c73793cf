"""Bounded, append-only event history.

Entries are evicted oldest-first once the log holds ``limit`` items, and,
when a window is configured, once they are older than ``window_seconds``.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import Generic, TypeVar

from harness_resilience.clock import Clock, SystemClock

T = TypeVar("T")


class EventLog(Generic[T]):
    """Thread-safe ring of timestamped entries."""

    def __init__(
        self,
        *,
        limit: int = 1000,
        window_seconds: float | None = None,
        clock: Clock | None = None,
        timestamp_of: Callable[[T], float] = lambda e: e.timestamp,  # type: ignore[attr-defined]
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self._entries: deque[T] = deque(maxlen=limit)
        self._window = window_seconds
        self._clock = clock or SystemClock()
        self._timestamp_of = timestamp_of
        self._lock = threading.Lock()

    def append(self, entry: T) -> None:
        with self._lock:
            self._entries.append(entry)
            self._evict()

    def query(self, start: float | None = None, end: float | None = None) -> list[T]:
        """Entries with ``start <= timestamp <= end`` in insertion order."""
        with self._lock:
            self._evict()
            return [
                e for e in self._entries
                if (start is None or self._timestamp_of(e) >= start)
                and (end is None or self._timestamp_of(e) <= end)
            ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict()
            return len(self._entries)

    # ── Internals ────────────────────────────────────────────
    def _evict(self) -> None:
        """Drop entries outside the time window. Caller holds lock."""
        if self._window is None:
            return
        cutoff = self._clock.now() - self._window
        while self._entries and self._timestamp_of(self._entries[0]) < cutoff:
            self._entries.popleft()
