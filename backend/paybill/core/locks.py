"""In-process keyed mutual exclusion."""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits on it.

    Callers for different keys never block each other.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._locks: dict[str, Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock:
            key_lock = self._locks.setdefault(key, Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        key_lock.acquire()
        try:
            yield
        finally:
            key_lock.release()
            with self._lock:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited (useful for testing)."""
        with self._lock:
            return len(self._locks)


# Serializes reconciliation of a single payment attempt, keyed by checkout reference.
attempt_locks = KeyedLock()
