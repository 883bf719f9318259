"""
Caching for computed impact aggregates.

Provides an in-memory TTL cache with key patterns like
aggregate:{level}:{id}:{period} and public:{level}:{id}:{period}. Aggregates
are pure projections of the record set, so the cache is coarse: entries expire
after a TTL and any record write clears them best-effort.
"""

import asyncio
import fnmatch
import logging
import time
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached item with metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: Optional[float]
    last_accessed: float


class CacheInterface(ABC):
    """Abstract interface for cache implementations."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get a value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a value in cache with optional TTL in seconds."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key from cache. Returns True if key existed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all cache entries."""
        pass

    @abstractmethod
    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """Get all keys, optionally matching a glob pattern."""
        pass


class InMemoryCache(CacheInterface):
    """
    In-memory cache with TTL expiry and least-recently-used eviction.

    The clock is injectable so tests can expire entries without sleeping.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: Optional[int] = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            now = self._clock()
            if entry.expires_at is not None and now >= entry.expires_at:
                del self._cache[key]
                return None

            entry.last_accessed = now
            return entry.value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        async with self._lock:
            now = self._clock()
            self._drop_expired(now)
            if key not in self._cache and len(self._cache) >= self.max_size:
                self._evict_lru()

            if ttl is None:
                ttl = self.default_ttl

            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl if ttl is not None else None,
                last_accessed=now,
            )

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        async with self._lock:
            self._drop_expired(self._clock())
            all_keys = sorted(self._cache)
            if pattern is None:
                return all_keys
            return [key for key in all_keys if fnmatch.fnmatch(key, pattern)]

    def _drop_expired(self, now: float) -> None:
        expired = [
            key for key, entry in self._cache.items()
            if entry.expires_at is not None and now >= entry.expires_at
        ]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")

    def _evict_lru(self) -> None:
        # Drop the oldest fifth to avoid evicting on every insert
        lru_keys = sorted(self._cache, key=lambda k: self._cache[k].last_accessed)
        for key in lru_keys[:max(1, len(lru_keys) // 5)]:
            del self._cache[key]


class AggregateCache:
    """
    Cache for impact aggregates and public responses.

    Key patterns:
    - aggregate:{level}:{id}:{period}: ImpactAggregate
    - public:{level}:{id}:{period}: public response dict
    - factpack:{level}:{id}:{period}: report fact pack
    """

    def __init__(self, cache: Optional[CacheInterface] = None, ttl: int = 300):
        self.cache = cache or InMemoryCache(default_ttl=ttl)
        self.ttl = ttl

    @staticmethod
    def make_key(prefix: str, *args: Any) -> str:
        """
        Create a cache key from the exact request parameters.

        Parts are percent-encoded rather than normalized: aggregates echo the
        requested scope id, so ``West Nile`` and ``West_Nile`` must not share
        an entry.
        """
        parts = []
        for arg in args:
            text = "" if arg is None else str(getattr(arg, "value", arg))
            parts.append(urllib.parse.quote(text, safe=""))
        return f"{prefix}:{':'.join(parts)}"

    async def get(self, prefix: str, level: Any, scope_id: str, period: Any) -> Optional[Any]:
        return await self.cache.get(self.make_key(prefix, level, scope_id, period))

    async def set(
        self,
        prefix: str,
        level: Any,
        scope_id: str,
        period: Any,
        value: Any,
        ttl: Optional[int] = None,
    ) -> None:
        await self.cache.set(self.make_key(prefix, level, scope_id, period), value, ttl or self.ttl)

    async def invalidate_all(self) -> int:
        """Drop every cached aggregate. Returns the number of keys removed."""
        removed = 0
        for pattern in ("aggregate:*", "public:*", "factpack:*", "league:*"):
            for key in await self.cache.keys(pattern):
                if await self.cache.delete(key):
                    removed += 1
        if removed:
            logger.debug(f"Invalidated {removed} cached aggregates")
        return removed

    async def on_record_write(self, record: Any) -> None:
        """Write listener for RecordStore.add_write_listener."""
        await self.invalidate_all()
