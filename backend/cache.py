# cache.py — Best-effort cache store for leaderboard, rank and roster views
#
# Backends:
# - RedisCache: redis-py asyncio client, JSON values, SCAN-based prefix deletes
# - MemoryCache: in-process TTL dict for single-worker and test deployments
#
# The engine only talks to the safe_* wrappers: a cache outage degrades to a
# source-of-truth read, it never fails the request.

import os
import json
import time
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger("rankforge.cache")

REDIS_URL = os.getenv("REDIS_URL", "")
CACHE_TTL = int(os.getenv("CACHE_TTL", "600"))


class CacheKeys:
    LEADERBOARD = "leaderboard:xp"
    LEADERBOARD_HISTORICAL = "leaderboard:historical"
    POSITION_PREFIX = "leaderboard:position:"
    TOURNAMENTS_ACTIVE = "tournaments:active"
    ASSIGNED_PREFIX = "tasks:assigned:"

    @staticmethod
    def position(player_id: str) -> str:
        return f"{CacheKeys.POSITION_PREFIX}{player_id}"

    @staticmethod
    def player_rank(player_id: str) -> str:
        return f"player:rank:{player_id}"

    @staticmethod
    def player_progress(player_id: str) -> str:
        return f"player:progress:{player_id}"

    @staticmethod
    def assigned_tasks(player_id: str) -> str:
        return f"{CacheKeys.ASSIGNED_PREFIX}{player_id}"

    @staticmethod
    def tournament(tournament_id: str) -> str:
        return f"tournament:{tournament_id}"


class CacheStore:
    """Cache backend contract. Raw methods may raise on backend failure."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: int = CACHE_TTL) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # --- Degrading wrappers ---

    async def safe_get(self, key: str) -> Optional[Any]:
        try:
            return await self.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def safe_set(self, key: str, value: Any, ttl: int = CACHE_TTL) -> bool:
        try:
            await self.set(key, value, ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def safe_delete(self, *keys: str) -> bool:
        try:
            await self.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {', '.join(keys)}: {e}")
            return False

    async def safe_delete_prefix(self, prefix: str) -> bool:
        try:
            await self.delete_prefix(prefix)
            return True
        except Exception as e:
            logger.warning(f"Cache prefix invalidation failed for {prefix}*: {e}")
            return False


class RedisCache(CacheStore):
    def __init__(self, url: str, client: Optional[aioredis.Redis] = None):
        self.url = url
        self._client = client or aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = CACHE_TTL) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch = []
        async for key in self._client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self._client.delete(*batch)
                batch = []
        if batch:
            deleted += await self._client.delete(*batch)
        return deleted

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCache(CacheStore):
    """In-process TTL cache. Values are JSON round-tripped like Redis would."""

    def __init__(self, max_size: int = 5000):
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = CACHE_TTL) -> None:
        async with self._lock:
            self._entries[key] = (time.monotonic() + ttl, json.dumps(value, default=str))
            if len(self._entries) > self._max_size:
                self._evict()

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def _evict(self) -> None:
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[key]
        overflow = len(self._entries) - self._max_size
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1][0])[:overflow]
            for key, _ in oldest:
                del self._entries[key]


def create_cache() -> CacheStore:
    if REDIS_URL:
        logger.info("Cache backend: redis")
        return RedisCache(REDIS_URL)
    logger.warning("REDIS_URL not set — using in-process cache (single worker only)")
    return MemoryCache()
