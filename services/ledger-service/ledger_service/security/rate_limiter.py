"""In-memory sliding window rate limiter implementation."""

from __future__ import annotations

import hashlib
import math
import time
from collections import deque
from threading import Lock
from typing import Deque, DefaultDict, Protocol


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...

    def retry_after(self, key: str) -> int: ...


def fingerprint(key: str) -> str:
    """Digest a limiter key so raw login identifiers are never kept as keys."""
    return hashlib.sha256(key.lower().encode("utf-8")).hexdigest()[:24]


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def _evict(self, queue: Deque[float], now: float) -> None:
        while queue and now - queue[0] > self._window:
            queue.popleft()

    def allow(self, key: str) -> bool:
        """Return ``True`` when the request is within the configured rate limit."""
        now = time.time()
        with self._lock:
            queue = self._events[fingerprint(key)]
            self._evict(queue, now)
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest event for ``key`` leaves the window."""
        now = time.time()
        with self._lock:
            queue = self._events.get(fingerprint(key))
            if not queue:
                return 0
            self._evict(queue, now)
            if len(queue) < self._max_requests:
                return 0
            return max(1, math.ceil(self._window - (now - queue[0])))
