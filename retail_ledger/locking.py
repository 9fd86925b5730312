"""
Per-key mutual exclusion.

Serializes work on one key (an account number). Work on different keys
does not contend for the same lock, though it may still queue on a
shared resource such as the store.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLocks:
    """Registry of one lock per key, created on first use"""
    
    def __init__(self):
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()
    
    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock
    
    @contextmanager
    def hold(self, key: Hashable):
        """Hold the lock for ``key`` for the duration of the block"""
        lock = self._lock_for(key)
        with lock:
            yield
    
    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
