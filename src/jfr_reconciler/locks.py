"""Per-target mutual exclusion for remote profiling sessions.

The agent on a target handles one caller session at a time, so every
connect/act/disconnect span against that target runs under its lock. Spans
against different targets run in parallel.

Locks live only while somebody holds or waits on them; the last holder drops
the entry, so the registry does not grow with every target ever seen.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

logger = logging.getLogger("reconciler.locks")


class LockRegistry:
    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}
        self._locks_lock = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        """Get or create the lock for ``key``."""
        with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._locks_lock:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            if not lock.acquire(blocking=False):
                logger.debug(f"Waiting for session lock on {key}")
                lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._locks_lock:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._locks_lock:
            return len(self._locks)
