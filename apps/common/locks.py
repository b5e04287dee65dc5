"""
Per-key critical sections with bounded waiting.

Mutations of one meter funnel through ``KeyedLocks.hold(meter_id)``; callers
that lose the race within their timeout get ``ConcurrencyConflict``, which
``retry_on_conflict`` retries with capped exponential backoff and jitter,
never past the caller's deadline.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from .errors import ConcurrencyConflict
from .metrics import CONFLICTS_RETRIED

log = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_INITIAL_MS = 20
BACKOFF_MAX_MS = 500
BACKOFF_MULTIPLIER = 2.0


def calculate_backoff_ms(attempt: int, initial_ms: int = BACKOFF_INITIAL_MS, max_ms: int = BACKOFF_MAX_MS) -> int:
    backoff = initial_ms * (BACKOFF_MULTIPLIER ** attempt)
    return min(int(backoff), max_ms)


def _backoff_delay(attempt: int, initial_ms: int, max_ms: int) -> float:
    delay = calculate_backoff_ms(attempt, initial_ms, max_ms) / 1000.0
    return delay * (0.5 + random.random() * 0.5)


class KeyedLocks:
    """Lazily created lock per key; a key's lock is dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, List] = {}  # key -> [lock, users]
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=max(0.0, timeout)):
                raise ConcurrencyConflict(f"lock_busy:{key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


def retry_on_conflict(
    fn: Callable[[], T],
    *,
    retries: int,
    initial_ms: int = BACKOFF_INITIAL_MS,
    max_ms: int = BACKOFF_MAX_MS,
    deadline: Optional[float] = None,
) -> T:
    """Run ``fn``, retrying ``ConcurrencyConflict``.

    ``deadline`` is a ``time.monotonic()`` value: no backoff sleep may end past
    it, so the conflict surfaces as soon as the remaining time is used up.
    """
    for attempt in range(retries + 1):
        try:
            return fn()
        except ConcurrencyConflict as exc:
            if attempt >= retries:
                log.warning("conflict_exhausted", extra={"attempts": attempt + 1, "error": exc.message})
                raise
            delay = _backoff_delay(attempt, initial_ms, max_ms)
            if deadline is not None and time.monotonic() + delay >= deadline:
                log.warning("conflict_deadline", extra={"attempts": attempt + 1, "error": exc.message})
                raise
            CONFLICTS_RETRIED.inc()
            time.sleep(delay)
    raise ConcurrencyConflict("retry_loop_exhausted")


__all__ = ["KeyedLocks", "calculate_backoff_ms", "retry_on_conflict"]
