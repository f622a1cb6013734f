"""
Bounded TTL cache for ratings and external scan results.

Usage:
    from scanguard.cache import TTLCache

    cache = TTLCache(default_ttl=300, max_size=1000)
    cache.set("rating_abc", rating)
    rating = cache.get("rating_abc")

Features:
    - Thread-safe; every operation is a single lock-scoped step
    - Expiry checked on every read, independent of the sweeper
    - Oldest-written eviction when max_size is reached (not LRU: a re-set
      moves the key to the back, reads do not)
    - Optional background sweeper task that reclaims expired entries
    - Tracks hits/misses/evictions for health reporting
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from scanguard.config.defaults import (
    CACHE_DEFAULT_TTL_SECONDS,
    CACHE_MAX_SIZE,
    CACHE_SWEEP_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Cached value with its write time and TTL (seconds)."""
    value: T
    written_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.written_at > self.ttl


class TTLCache:
    """In-memory map with per-entry expiry and a size bound."""

    def __init__(
        self,
        default_ttl: float = CACHE_DEFAULT_TTL_SECONDS,
        max_size: int = CACHE_MAX_SIZE,
        sweep_interval: float = CACHE_SWEEP_INTERVAL_SECONDS,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval

        # dict keeps insertion order, so the first key is the oldest write
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._stats: dict[str, int] = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}
        self._lock = threading.Lock()
        self._sweeper_task: Optional[asyncio.Task] = None

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default if absent or expired."""
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return default
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return default
            self._stats["hits"] += 1
            return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry[Any]]:
        """Return the live entry (value plus metadata) without touching stats."""
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(now):
                return None
            return entry

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key, evicting the oldest write if full."""
        entry = CacheEntry(value=value, written_at=time.time(),
                           ttl=self.default_ttl if ttl is None else ttl)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
                self._stats["evictions"] += 1
                logger.debug(f"Cache evicted oldest entry {oldest_key!r}")
            self._entries[key] = entry

    def has(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Purge expired entries. Returns the number removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expirations"] += len(expired)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = time.time()
        with self._lock:
            size = len(self._entries)
            expired = sum(1 for e in self._entries.values() if e.is_expired(now))
            stats = dict(self._stats)

        total_requests = stats["hits"] + stats["misses"]
        hit_rate = (stats["hits"] / total_requests * 100) if total_requests > 0 else 0.0

        return {
            "size": size,
            "valid_entries": size - expired,
            "expired_entries": expired,
            "max_size": self.max_size,
            "hits": stats["hits"],
            "misses": stats["misses"],
            "evictions": stats["evictions"],
            "expirations": stats["expirations"],
            "hit_rate_percent": round(hit_rate, 2),
            "default_ttl_seconds": self.default_ttl,
        }

    # Background sweeper

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic sweep on the running loop (idempotent)."""
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._sweep_loop())
        return self._sweeper_task

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cache sweep error: {e}")
