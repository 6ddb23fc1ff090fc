from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ConcurrencyLimiter:
    """Bounds in-flight store calls; share one instance to cap a whole account."""

    def __init__(self, max_concurrent: int) -> None:
        if not isinstance(max_concurrent, int) or max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self._max_concurrent = max_concurrent
        self._sem = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def peak(self) -> int:
        return self._peak

    def try_acquire(self) -> bool:
        if not self._sem.acquire(blocking=False):
            return False
        self._enter()
        return True

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._sem.release()

    @contextmanager
    def acquire(self) -> Iterator[None]:
        self._sem.acquire()
        self._enter()
        try:
            yield
        finally:
            self.release()

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
