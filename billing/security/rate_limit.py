"""In-memory sliding-window rate limiter for the payment webhook."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable


class RateLimitExceeded(Exception):
    """Raised when a caller exceeds the configured request budget."""

    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for key={key}")
        self.retry_after = retry_after


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: float


class RateLimiter:
    """Sliding-window limiter keyed by caller (client address for webhooks)."""

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float = 60.0,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.config = RateLimitConfig(limit=limit, window_seconds=window_seconds)
        self._time = time_source
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def _prune(self, queue: deque[float], now: float) -> None:
        window_start = now - self.config.window_seconds
        while queue and queue[0] <= window_start:
            queue.popleft()

    def allow(self, key: str) -> bool:
        """Return True and record the hit if a request for ``key`` may proceed."""

        now = self._time()
        with self._lock:
            queue = self._events.setdefault(key, deque())
            self._prune(queue, now)
            if len(queue) >= self.config.limit:
                return False
            queue.append(now)
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` gets a free slot; 0 when one is available now."""

        now = self._time()
        with self._lock:
            queue = self._events.get(key)
            if not queue:
                return 0.0
            self._prune(queue, now)
            if len(queue) < self.config.limit:
                return 0.0
            return max(queue[0] + self.config.window_seconds - now, 0.0)

    def assert_allow(self, key: str) -> None:
        if not self.allow(key):
            raise RateLimitExceeded(key, self.retry_after(key))
