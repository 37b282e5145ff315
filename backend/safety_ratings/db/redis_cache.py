"""
Ephemeral cache for safety ratings.

Holds short-lived JSON copies of rating rows plus memoized provider
enumeration responses and the remote CSV Last-Modified header. Nothing
here is a source of truth; every cache failure degrades to a miss.

Backends:
- Redis (production) with connection pooling and a circuit breaker
- In-memory (tests and single-process development)
"""

import asyncio
import fnmatch
import json
import re
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from safety_ratings.core.config import settings
from safety_ratings.core.logging import get_logger
from safety_ratings.services.records import RatingRecord

logger = get_logger(__name__)


# =============================================================================
# Cache TTL Configuration (in seconds)
# =============================================================================


class CacheTTL:
    """Cache time-to-live configuration per data type."""

    RATING = 24 * 3600
    CSV_LAST_MODIFIED = 24 * 3600
    MODEL_YEARS = 30 * 24 * 3600
    MAKES = 7 * 24 * 3600
    MODELS = 7 * 24 * 3600


class CachePrefix:
    """Cache key prefixes for namespace organization."""

    RATING = "nhtsa:rating:"
    MODEL_YEARS = "nhtsa:years"
    MAKES = "nhtsa:makes:"
    MODELS = "nhtsa:models:"
    CSV_LAST_MODIFIED = "nhtsa:csv:last_modified"
    ALL = "nhtsa:*"


_WHITESPACE = re.compile(r"\s+")


def _key_part(value: str) -> str:
    return _WHITESPACE.sub("_", value.strip().lower())


def rating_key(year: int, make: str, model: str) -> str:
    """``nhtsa:rating:{year}:{make}:{model}`` with make/model lower-cased and spaces as ``_``."""
    return f"{CachePrefix.RATING}{year}:{_key_part(make)}:{_key_part(model)}"


def makes_key(year: int) -> str:
    return f"{CachePrefix.MAKES}{year}"


def models_key(year: int, make: str) -> str:
    return f"{CachePrefix.MODELS}{year}:{_key_part(make)}"


# =============================================================================
# Backends
# =============================================================================


class CacheBackend:
    """Abstract base for cache backends."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryCacheBackend(CacheBackend):
    """Simple in-memory cache implementation."""

    def __init__(self) -> None:
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            if key in self._cache:
                value, expiry = self._cache[key]
                if expiry > time.monotonic():
                    return value
                del self._cache[key]
            return None

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            self._cache[key] = (value, time.monotonic() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            keys = [k for k in self._cache if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._cache[key]
            return len(keys)


class RedisCacheBackend(CacheBackend):
    """
    Redis-based cache with connection pooling.

    After ``max_failures`` consecutive errors the circuit opens and every
    call is a miss until ``reset_after`` seconds have passed.
    """

    def __init__(
        self,
        redis_url: str,
        max_failures: int = 5,
        reset_after: float = 30.0,
    ) -> None:
        self._pool = ConnectionPool.from_url(
            redis_url,
            max_connections=20,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
            retry_on_timeout=True,
            decode_responses=True,
        )
        self._client = redis.Redis(connection_pool=self._pool)
        self._failure_count = 0
        self._max_failures = max_failures
        self._reset_after = reset_after
        self._circuit_open_until = 0.0

    def _circuit_closed(self) -> bool:
        if self._circuit_open_until and time.monotonic() < self._circuit_open_until:
            return False
        if self._circuit_open_until:
            self._circuit_open_until = 0.0
            self._failure_count = 0
            logger.info("Redis circuit breaker reset")
        return True

    def _record_failure(self, operation: str, key: str, error: Exception) -> None:
        logger.warning(f"Redis {operation} error for {key}: {error}")
        self._failure_count += 1
        if self._failure_count >= self._max_failures:
            self._circuit_open_until = time.monotonic() + self._reset_after
            logger.warning("Redis circuit breaker opened due to failures")

    async def get(self, key: str) -> Optional[str]:
        if not self._circuit_closed():
            return None
        try:
            value = await self._client.get(key)
            self._failure_count = 0
            return str(value) if value is not None else None
        except (RedisError, OSError) as e:
            self._record_failure("GET", key, e)
            return None

    async def set(self, key: str, value: str, ttl: int) -> None:
        if not self._circuit_closed():
            return
        try:
            await self._client.setex(key, ttl, value)
        except (RedisError, OSError) as e:
            self._record_failure("SET", key, e)

    async def delete(self, key: str) -> None:
        if not self._circuit_closed():
            return
        try:
            await self._client.delete(key)
        except (RedisError, OSError) as e:
            self._record_failure("DELETE", key, e)

    async def delete_pattern(self, pattern: str) -> int:
        if not self._circuit_closed():
            return 0
        try:
            keys = [key async for key in self._client.scan_iter(match=pattern)]
            if keys:
                return int(await self._client.delete(*keys))
            return 0
        except (RedisError, OSError) as e:
            self._record_failure("DELETE PATTERN", pattern, e)
            return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
        await self._pool.disconnect()
        logger.info("Disconnected from Redis")


def create_cache_backend(backend: str | None = None, redis_url: str | None = None) -> CacheBackend:
    """Build the configured backend (``redis`` or ``memory``)."""
    kind = (backend or settings.CACHE_BACKEND).lower()
    if kind == "memory":
        logger.info("Using in-memory ephemeral cache")
        return InMemoryCacheBackend()
    logger.info("Using Redis ephemeral cache")
    return RedisCacheBackend(redis_url or settings.REDIS_URL)


# =============================================================================
# Rating Cache
# =============================================================================


class RatingCache:
    """
    Typed access to the ephemeral cache.

    Values are stored as JSON; undecodable entries are dropped and
    reported as misses.
    """

    def __init__(self, backend: CacheBackend, rating_ttl: int | None = None) -> None:
        self.backend = backend
        self.rating_ttl = rating_ttl or settings.EPHEMERAL_TTL_HOURS * 3600
        self.hits = 0
        self.misses = 0

    async def get_json(self, key: str) -> Any:
        raw = await self.backend.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Dropping undecodable cache entry {key}")
            await self.backend.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        await self.backend.set(key, json.dumps(value, default=str), ttl)

    async def delete(self, key: str) -> None:
        await self.backend.delete(key)

    async def get_rating(self, year: int, make: str, model: str) -> RatingRecord | None:
        data = await self.get_json(rating_key(year, make, model))
        if data is None:
            self.misses += 1
            return None
        self.hits += 1
        return RatingRecord.model_validate(data)

    async def set_rating(self, record: RatingRecord) -> None:
        await self.backend.set(
            rating_key(record.year, record.make, record.model),
            record.model_dump_json(),
            self.rating_ttl,
        )

    async def evict_rating(self, year: int, make: str, model: str) -> None:
        await self.backend.delete(rating_key(year, make, model))

    async def clear_ratings(self) -> int:
        """Drop every rating entry."""
        return await self.backend.delete_pattern(f"{CachePrefix.RATING}*")

    async def clear_all(self) -> int:
        """Drop every key this service owns."""
        return await self.backend.delete_pattern(CachePrefix.ALL)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups * 100, 1) if lookups else 0.0,
        }

    async def close(self) -> None:
        await self.backend.close()
