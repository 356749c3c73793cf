"""Sharded locking for per-target ledgers."""

from __future__ import annotations

import threading
from collections.abc import Hashable


class StripedLock:
    """Fixed pool of locks; each key maps to one stripe.

    Operations on different targets rarely contend, while operations on the
    same target are always serialized.  Never hold two stripes at once.
    """

    def __init__(self, stripes: int = 32) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    def for_key(self, key: Hashable) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._locks)
