"""Per-key lock registry.

Each key (a run id, a charge id, a credit scope tuple) gets one
re-entrant lock. ``hold()`` acquires several keys in a fixed order so
two callers locking overlapping key sets cannot deadlock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class LockRegistry:
    """Lazily-created re-entrant locks keyed by entity or scope."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """Acquire every key's lock, in sorted order, for the block."""
        ordered = sorted(set(keys), key=repr)
        acquired: list[threading.RLock] = []
        try:
            for key in ordered:
                lock = self.lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
