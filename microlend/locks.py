"""
Keyed Locks

Per-entity mutual exclusion for read-modify-write sequences on loans, escrows
and schedules. Keys look like "loan:<id>" or "escrow:<id>".
"""

import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLock:
    """A lazily created RLock per key"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for `key` for the duration of the block"""
        lock = self._lock_for(key)
        with lock:
            yield
