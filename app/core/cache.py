"""
In-memory TTL cache.

The authorization engine talks to its cache through the ``Cache`` protocol, so
a Redis-backed implementation can replace ``MemoryCache`` without touching the
callers. Entries are never invalidated on write elsewhere; they expire.
"""
import time
from threading import Lock
from typing import Any, Callable, Optional, Protocol

from app.utils import get_logger


log = get_logger(__name__)


class Cache(Protocol):
    """Key/value store with per-entry TTL."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...


class CacheEntry:
    """Represents a cached value with expiration time."""

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        """Check if the cache entry has expired."""
        return now >= self.expires_at


class MemoryCache:
    """
    In-memory cache with TTL support.

    Thread-safe for concurrent access. ``clock`` returns monotonic seconds and
    can be replaced in tests to step over expiry without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, name: str = "cache"):
        self._cache: dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._clock = clock
        self.name = name

    async def get(self, key: str) -> Optional[Any]:
        """
        Get a value from the cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found or expired
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                log.debug(f"{self.name} miss: {key}")
                return None

            if entry.is_expired(self._clock()):
                del self._cache[key]
                log.debug(f"{self.name} expired: {key}")
                return None

            log.debug(f"{self.name} hit: {key}")
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: int = 300) -> bool:
        """
        Set a value in the cache with TTL.

        Args:
            key: Cache key
            value: Value to cache
            ttl_seconds: Time to live in seconds (default: 5 minutes)

        Returns:
            True once stored
        """
        with self._lock:
            self._cache[key] = CacheEntry(value, self._clock() + ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._cache.clear()

    def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired_keys = [
                key for key, entry in self._cache.items()
                if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._cache[key]
        return len(expired_keys)

    def size(self) -> int:
        """Get the number of entries in the cache."""
        with self._lock:
            return len(self._cache)
