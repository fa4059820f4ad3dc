"""
Injectable clock and rotation rate limiter.

The limiter keeps no module-level state: its clock and its counter store are
passed in, so tests can move time and multi-process deployments can back the
store with shared storage.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Optional, Protocol

from .errors import RateLimitException


class Clock(Protocol):
    def now(self) -> float:
        """Current time in unix seconds."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = float(value)


class RateLimitStore(ABC):
    """Per-key log of recent hit timestamps."""

    @abstractmethod
    def try_record(self, key: str, now: float, window: float, limit: int) -> Optional[float]:
        """
        Prune hits older than `window`, then record a hit if fewer than
        `limit` remain. Returns None on success, otherwise the number of
        seconds until a slot frees up. Must be atomic per key.
        """
        ...

    @abstractmethod
    def count(self, key: str, now: float, window: float) -> int:
        ...

    @abstractmethod
    def release(self, key: str, stamp: float) -> None:
        """Drop one hit recorded at `stamp`, if it is still logged."""
        ...

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store; each worker approximates the limit independently."""

    def __init__(self) -> None:
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float, window: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - window:
            hits.popleft()
        return hits

    def try_record(self, key: str, now: float, window: float, limit: int) -> Optional[float]:
        with self._lock:
            hits = self._prune(key, now, window)
            if len(hits) >= limit:
                return max(0.0, hits[0] + window - now)
            hits.append(now)
            return None

    def count(self, key: str, now: float, window: float) -> int:
        with self._lock:
            return len(self._prune(key, now, window))

    def release(self, key: str, stamp: float) -> None:
        with self._lock:
            hits = self._hits.get(key)
            if hits and stamp in hits:
                hits.remove(stamp)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


class RotationRateLimiter:
    """At most `limit` scheduled rotations per key in any rolling `window_seconds`."""

    def __init__(
        self,
        limit: int = 3,
        window_seconds: float = 60.0,
        clock: Optional[Clock] = None,
        store: Optional[RateLimitStore] = None,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock: Clock = clock or SystemClock()
        self.store: RateLimitStore = store or InMemoryRateLimitStore()

    def try_acquire(self, key: str) -> Optional[float]:
        """Record a rotation. Returns None if allowed, else seconds to wait."""
        return self.store.try_record(
            key, self.clock.now(), self.window_seconds, self.limit
        )

    def acquire(self, key: str) -> float:
        """
        Record a rotation and return its timestamp, for `release`.

        Raises:
            RateLimitException: If the window is full (nothing is recorded)
        """
        now = self.clock.now()
        retry_after = self.store.try_record(key, now, self.window_seconds, self.limit)
        if retry_after is not None:
            raise RateLimitException(
                f"Rotation limit of {self.limit} per {self.window_seconds:g}s reached",
                retry_after=retry_after,
            )
        return now

    def release(self, key: str, stamp: float) -> None:
        """Give back a slot taken by `acquire` for a rotation that did not happen."""
        self.store.release(key, stamp)

    def remaining(self, key: str) -> int:
        used = self.store.count(key, self.clock.now(), self.window_seconds)
        return max(0, self.limit - used)

    def reset(self, key: Optional[str] = None) -> None:
        self.store.reset(key)
