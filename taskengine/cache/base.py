"""Shared key/value cache contract used by the access governor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CacheAdapter(ABC):
    """Async key/value cache with counters, expiry, queues and locks.

    Values are JSON-compatible. ``ttl`` arguments are seconds.
    Implementations must make ``increment`` and ``acquire_lock`` atomic.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` (may be negative) and return the new value."""

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> None: ...

    @abstractmethod
    async def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires; None if missing or without expiry."""

    @abstractmethod
    async def queue_push(self, queue: str, value: Any) -> int: ...

    @abstractmethod
    async def queue_pop(self, queue: str) -> Any | None: ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def acquire_lock(self, key: str, ttl: float) -> str | None:
        """Set ``key`` only if absent, with expiry.

        Returns the owner token when this caller now holds the lock, else None.
        """

    @abstractmethod
    async def release_lock(self, key: str, token: str) -> bool:
        """Delete ``key`` only while it still holds ``token``. False if another holder owns it."""

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
