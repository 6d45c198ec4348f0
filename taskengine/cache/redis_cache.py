"""Redis-backed cache adapter shared by every engine instance."""

from __future__ import annotations

import json
import logging
import math
import uuid
from typing import Any

import redis.asyncio as redis

from taskengine.cache.base import CacheAdapter

logger = logging.getLogger(__name__)

# Delete the lock only while it still holds the caller's token
_RELEASE_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisCacheAdapter(CacheAdapter):
    """CacheAdapter over redis.asyncio.

    Values are JSON-encoded; counters are stored as plain integers so INCRBY
    stays atomic. Locks use SET NX EX with a per-holder token, and release
compares the token before deleting.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "taskengine:", client: redis.Redis | None = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            logger.info("Redis cache configured at %s", self.redis_url)
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._get_client().get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl is not None:
            await self._get_client().set(self._key(key), payload, px=max(int(ttl * 1000), 1))
        else:
            await self._get_client().set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self._key(key))

    async def increment(self, key: str, amount: int = 1) -> int:
        return int(await self._get_client().incrby(self._key(key), amount))

    async def expire(self, key: str, ttl: float) -> None:
        await self._get_client().pexpire(self._key(key), max(int(ttl * 1000), 1))

    async def ttl(self, key: str) -> float | None:
        remaining_ms = await self._get_client().pttl(self._key(key))
        # -2: missing, -1: no expiry
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def queue_push(self, queue: str, value: Any) -> int:
        return int(await self._get_client().rpush(self._key(queue), json.dumps(value, default=str)))

    async def queue_pop(self, queue: str) -> Any | None:
        raw = await self._get_client().lpop(self._key(queue))
        return None if raw is None else json.loads(raw)

    async def queue_length(self, queue: str) -> int:
        return int(await self._get_client().llen(self._key(queue)))

    async def acquire_lock(self, key: str, ttl: float) -> str | None:
        token = uuid.uuid4().hex
        acquired = await self._get_client().set(
            self._key(key), token, nx=True, ex=max(math.ceil(ttl), 1),
        )
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        deleted = await self._get_client().eval(_RELEASE_LOCK_SCRIPT, 1, self._key(key), token)
        return bool(deleted)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
