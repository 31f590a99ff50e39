"""Cache store contract and its Redis implementation."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "pricefeed:cache:"


@runtime_checkable
class CacheStore(Protocol):
    """Key/value store with per-entry TTL. Failures read as misses."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool: ...


class RedisCache:
    """JSON payloads under ``pricefeed:cache:{dataType}:{symbol}`` with SETEX."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._redis.get(_KEY_PREFIX + key)
        except RedisError as exc:
            logger.warning("cache get failed for %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("discarding undecodable cache entry %s", key)
            return None
        return payload if isinstance(payload, dict) else None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> bool:
        try:
            await self._redis.setex(_KEY_PREFIX + key, int(ttl_seconds), json.dumps(value, default=str))
        except RedisError as exc:
            logger.warning("cache set failed for %s: %s", key, exc)
            return False
        return True

    async def remove(self, key: str) -> bool:
        try:
            await self._redis.delete(_KEY_PREFIX + key)
        except RedisError as exc:
            logger.warning("cache delete failed for %s: %s", key, exc)
            return False
        return True
