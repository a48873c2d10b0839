"""
Key-value cache used to memoize expensive read aggregations.

The cache is never the system of record: every backend turns its own
failures into misses so that a broken cache only costs latency.
"""

import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheTTL:
    SHORT = 300  # 5 minutes
    MEDIUM = 3600  # 1 hour
    LONG = 86400  # 24 hours


class CacheKeys:
    """Key layout shared by writers and invalidation"""

    @staticmethod
    def user_metrics(user_id: int, period: str, day: str) -> str:
        return f"user:{user_id}:metrics:{period}:{day}"

    @staticmethod
    def team_metrics(period: str, day: str) -> str:
        return f"team:metrics:{period}:{day}"

    @staticmethod
    def user_trends(user_id: int, days: int) -> str:
        return f"user:{user_id}:trends:{days}"

    @staticmethod
    def team_trends(days: int) -> str:
        return f"team:trends:{days}"

    INVALIDATE_AFTER_SYNC = ("user:*", "team:*", "trends:*", "dashboard:*")


class Cache(ABC):
    """Interface the engine talks to"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = CacheTTL.MEDIUM) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        ...

    async def close(self) -> None:
        return None


class InMemoryCache(Cache):
    """
    Process-local LRU cache with per-entry TTL.

    Used when no Redis URL is configured and in tests.
    """

    def __init__(self, max_entries: int = 2048, clock: Callable[[], float] = time.monotonic):
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl: int = CacheTTL.MEDIUM) -> None:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return
        self._entries[key] = (self._clock() + ttl, payload)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)


class RedisCache(Cache):
    """Redis-backed cache (JSON payloads)"""

    def __init__(self, redis_url: str, client: Any = None):
        if client is None:
            client = redis.from_url(redis_url)
        self._redis = client

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self._redis.get(key)
            return json.loads(value) if value else None
        except Exception as e:
            logger.error(f"Cache get error for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = CacheTTL.MEDIUM) -> None:
        try:
            await self._redis.setex(key, ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except Exception as e:
            logger.error(f"Cache delete error for key {key}: {e}")

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            async for key in self._redis.scan_iter(match=pattern):
                deleted += await self._redis.delete(key)
        except Exception as e:
            logger.error(f"Cache delete pattern error for pattern {pattern}: {e}")
        return deleted

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception as e:
            logger.warning(f"Error closing redis client: {e}")


def build_cache(redis_url: Optional[str]) -> Cache:
    """Redis when configured, otherwise an in-process cache"""
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache(redis_url)
    logger.info("REDIS_URL not set, using in-memory cache")
    return InMemoryCache()
