"""In-process cache adapter for single-instance deployments and tests."""

from __future__ import annotations

import time
import uuid
from collections import deque
from typing import Any

from taskengine.cache.base import CacheAdapter


class InMemoryCacheAdapter(CacheAdapter):
    """Dict-backed cache with lazy expiry.

    All operations complete without awaiting, so each one is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}
        self._queues: dict[str, deque] = {}

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    async def get(self, key: str) -> Any | None:
        return self._data[key] if self._alive(key) else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._data[key] = value
        if ttl is not None:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)
        self._queues.pop(key, None)

    async def increment(self, key: str, amount: int = 1) -> int:
        current = self._data[key] if self._alive(key) else 0
        value = int(current) + amount
        self._data[key] = value
        return value

    async def expire(self, key: str, ttl: float) -> None:
        if self._alive(key):
            self._expires[key] = self._clock() + ttl

    async def ttl(self, key: str) -> float | None:
        if not self._alive(key):
            return None
        deadline = self._expires.get(key)
        if deadline is None:
            return None
        return max(deadline - self._clock(), 0.0)

    async def queue_push(self, queue: str, value: Any) -> int:
        q = self._queues.setdefault(queue, deque())
        q.append(value)
        return len(q)

    async def queue_pop(self, queue: str) -> Any | None:
        q = self._queues.get(queue)
        if not q:
            return None
        return q.popleft()

    async def queue_length(self, queue: str) -> int:
        return len(self._queues.get(queue, ()))

    async def acquire_lock(self, key: str, ttl: float) -> str | None:
        if self._alive(key):
            return None
        token = uuid.uuid4().hex
        await self.set(key, token, ttl=ttl)
        return token

    async def release_lock(self, key: str, token: str) -> bool:
        if not self._alive(key) or self._data[key] != token:
            return False
        await self.delete(key)
        return True
