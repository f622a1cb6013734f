"""Sliding window rate limiter keyed by caller.

Implements a sliding window algorithm for per-user vote budgets: at most
`max_events` accepted events per key inside any `window_seconds` span.
Bookkeeping is local to the process.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional

from scanguard.config.defaults import (
    VOTE_RATE_LIMIT_MAX_VOTES,
    VOTE_RATE_LIMIT_WINDOW_SECONDS,
)
from scanguard.errors import RateLimited


@dataclass
class RateLimitConfig:
    """Configuration for rate limits."""

    max_events: int = VOTE_RATE_LIMIT_MAX_VOTES
    window_seconds: float = VOTE_RATE_LIMIT_WINDOW_SECONDS


class SlidingWindowRateLimiter:
    """Per-key sliding window limiter."""

    def __init__(self, config: Optional[RateLimitConfig] = None):
        self.config = config or RateLimitConfig()
        self._events: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_purge = 0.0

    def _prune(self, key: str, now: float) -> deque[float]:
        window_start = now - self.config.window_seconds
        events = self._events.get(key)
        if events is None:
            return deque()
        while events and events[0] <= window_start:
            events.popleft()
        if not events:
            del self._events[key]
        return events

    def _purge_idle(self, now: float) -> None:
        """Drop keys with no events left in the window, at most once per window."""
        if now - self._last_purge < self.config.window_seconds:
            return
        self._last_purge = now
        window_start = now - self.config.window_seconds
        idle = [k for k, events in self._events.items() if not events or events[-1] <= window_start]
        for key in idle:
            del self._events[key]

    def acquire(self, key: str, now: Optional[float] = None) -> None:
        """
        Record one event for key.

        Raises:
            RateLimited: If key already used its budget inside the window.
                Rejected attempts are not recorded.
        """
        now = time.time() if now is None else now
        with self._lock:
            self._purge_idle(now)
            events = self._prune(key, now)
            if len(events) >= self.config.max_events:
                retry_after = events[0] + self.config.window_seconds - now
                raise RateLimited(
                    f"Rate limit exceeded for {key}: {self.config.max_events} "
                    f"per {self.config.window_seconds:.0f}s",
                    retry_after=max(0.0, retry_after),
                )
            self._events.setdefault(key, events).append(now)

    def remaining(self, key: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            return max(0, self.config.max_events - len(self._prune(key, now)))

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def get_status(self) -> dict:
        """Get current rate limit status."""
        now = time.time()
        with self._lock:
            active = {k: len(self._prune(k, now)) for k in list(self._events)}
        return {
            "max_events": self.config.max_events,
            "window_seconds": self.config.window_seconds,
            "active_keys": sum(1 for count in active.values() if count),
            "limited_keys": sum(1 for count in active.values() if count >= self.config.max_events),
        }

    def reset(self, key: Optional[str] = None) -> None:
        """Reset one key, or the whole limiter."""
        with self._lock:
            if key is None:
                self._events.clear()
            else:
                self._events.pop(key, None)
