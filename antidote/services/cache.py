"""
ResponseCache - TTL cache for successful GET responses.

Features:
- Entries live in a persistent KeyValueStore and survive restarts
- Expiry checked on read; an expired entry is deleted, never served
- Store failures degrade to a cache miss, since caching is optional
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from antidote.datastore.stores import KeyValueStore
from antidote.utils import utcnow


@dataclass
class CacheEntry:
    """A single cache entry."""

    key: str
    data: Any
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(
            {
                "key": self.key,
                "data": self.data,
                "expiresAt": self.expires_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        payload = json.loads(raw)
        return cls(
            key=payload["key"],
            data=payload["data"],
            expires_at=datetime.fromisoformat(payload["expiresAt"]),
        )


class ResponseCache:
    """
    Persistent response cache keyed by canonical request key.

    Usage:
        cache = ResponseCache(store, default_ttl=timedelta(minutes=60))

        hit = await cache.read(key)
        if hit is not None:
            return hit

        data = await fetch()
        await cache.write(key, data)
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_ttl: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = utcnow,
        debug: bool = False,
    ):
        if default_ttl <= timedelta(0):
            raise ValueError("default_ttl must be positive")
        self._store = store
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    async def read(self, key: str) -> Any | None:
        """Return the cached payload for ``key``, or None if absent or expired."""
        entry = await self.lookup(key)
        return entry.data if entry is not None else None

    async def lookup(self, key: str) -> CacheEntry | None:
        """
        Return the live entry for ``key``, or None if absent or expired.

        Unlike ``read``, a cached JSON null is distinguishable from a miss.
        """
        try:
            raw = await self._store.get(key)
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {key[:50]}...: {e}")
            self._stats.errors += 1
            return None

        if raw is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}...")
            return None

        try:
            entry = CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt cache entry {key[:50]}...: {e}")
            await self._delete_quietly(key)
            self._stats.misses += 1
            return None

        if entry.is_expired(self._clock()):
            await self._delete_quietly(key)
            self._stats.expirations += 1
            self._stats.misses += 1
            self._log(f"EXPIRED: {key[:50]}...")
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}...")
        return entry

    async def write(self, key: str, data: Any, ttl: timedelta | None = None) -> None:
        """
        Cache ``data`` under ``key``.

        Args:
            key: Canonical request key
            data: JSON-serializable payload
            ttl: Time to live (uses default if not specified)
        """
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl <= timedelta(0):
            raise ValueError("Cache TTL must be positive")

        entry = CacheEntry(key=key, data=data, expires_at=self._clock() + ttl)
        try:
            await self._store.set(key, entry.to_json())
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning(f"Cache write failed for {key[:50]}...: {e}")
            self._stats.errors += 1
            return

        self._stats.writes += 1
        self._log(f"SET: {key[:50]}... (TTL: {ttl.total_seconds()}s)")

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        deleted = await self._store.delete(key)
        if deleted:
            self._log(f"DELETE: {key[:50]}...")
        return deleted

    async def clear(self) -> int:
        """Clear all cache entries."""
        count = await self._store.clear()
        logger.info(f"Response cache cleared: {count} entries removed")
        return count

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except SQLAlchemyError as e:
            logger.warning(f"Cache delete failed for {key[:50]}...: {e}")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ResponseCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    writes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "writes": self.writes,
            "errors": self.errors,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
