"""Per-key mutual exclusion for sessions and worlds."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """An arena of re-entrant locks, one per key.

    Operations on different keys run in parallel. Locks are re-entrant
    so a caller already holding a session's lock (the service wrapping
    an engine call with its audit write) can call back into the engine.

    Lock order across arenas is world -> session. Code holding a session
    lock never takes a world lock.

    Locks are never released: the map holds one entry per session or
    world id ever locked, so it is bounded by the arena it guards, which
    also keeps every session and world for the life of the process.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
