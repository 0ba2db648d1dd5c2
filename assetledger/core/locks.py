"""
Per-key critical sections.

One mutex per key (asset id, serial number), created on demand and dropped
once no thread holds or waits on it.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Generator, Hashable

from .errors import LedgerBusy


class KeyedLocks:
    def __init__(self, name: str, timeout_seconds: float):
        self._name = name
        self._timeout = timeout_seconds
        self._guard = Lock()
        self._locks: dict[Hashable, Lock] = {}
        self._refcounts: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Generator[None, None, None]:
        """
        Enter the critical section for key.

        Raises:
            LedgerBusy: If the section could not be entered within the timeout
        """
        with self._guard:
            lock = self._locks.setdefault(key, Lock())
            self._refcounts[key] = self._refcounts.get(key, 0) + 1

        acquired = False
        try:
            acquired = lock.acquire(timeout=self._timeout)
            if not acquired:
                raise LedgerBusy(
                    f"Another {self._name} operation on {key!r} is in flight. Try again."
                )
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._refcounts[key] -= 1
                if self._refcounts[key] == 0:
                    del self._refcounts[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
