"""
Keyed Locks - one mutex per key

Rate windows are serialized per (category, scope) and session records per
session id. Operations on disjoint keys never contend for the same lock.

Usage:
    locks = KeyedLocks()

    with locks.hold(("write", "global")):
        # read-modify-write the window for this key
        pass
"""

from contextlib import contextmanager
from typing import Dict, Hashable, Iterator
import threading


class KeyedLocks:
    """Lazily created threading.Lock per key."""

    def __init__(self):
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        """Return the lock for key, creating it on first use."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Context manager that holds the lock for key."""
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
