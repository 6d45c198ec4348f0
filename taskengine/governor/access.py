"""Access governor: request rate, token budget, concurrency and locks.

All four mechanisms share one CacheAdapter so limits hold across engine
instances. Without a cache every check allows; a cache error is logged and
the request is allowed as well.

Key layout:
    ratelimit:requests:{identity}
    ratelimit:tokens:{identity}
    ratelimit:concurrent:{identity}
    lock:{key}
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from taskengine.cache.base import CacheAdapter
from taskengine.cache.factory import create_cache_adapter
from taskengine.config import settings
from taskengine.models.results import LimitDecision

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Token handed out when no cache guards the lock
UNGUARDED_LOCK = "unguarded"


class LimitExceeded(Exception):
    """Base for boundary rejections carrying response metadata."""

    code = "LIMIT_EXCEEDED"
    default_message = "Limit exceeded"

    def __init__(self, decision: LimitDecision, message: str | None = None) -> None:
        self.decision = decision
        super().__init__(message or self.default_message)

    def to_body(self) -> dict:
        """JSON body for an HTTP 429 response."""
        d = self.decision
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": str(self),
                "details": {
                    "limit": d.limit,
                    "remaining": max(d.remaining, 0),
                    "current": d.current,
                    "resetAt": d.reset_at,
                    "retryAfter": d.retry_after,
                },
            },
        }


class RateLimitExceeded(LimitExceeded):
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests, please try again later"


class TokenLimitExceeded(RateLimitExceeded):
    code = "TOKEN_LIMIT_EXCEEDED"
    default_message = "Token budget exhausted for this window"


class ConcurrencyLimitExceeded(LimitExceeded):
    code = "CONCURRENT_LIMIT_EXCEEDED"
    default_message = "Too many concurrent executions, please wait for one to complete"


class LockAcquisitionError(Exception):
    """Raised when a lock could not be taken within the attempt budget."""

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(f"Failed to acquire lock '{key}' after {attempts} attempts")


def resolve_identity(user_id: str | None = None, ip: str | None = None, key: str | None = None) -> str:
    """Caller identity: authenticated user, else network address, else caller key."""
    if user_id:
        return f"user:{user_id}"
    if ip:
        return f"ip:{ip}"
    if key:
        return f"key:{key}"
    return "ip:unknown"


class AccessGovernor:
    """Bounds request rate, token throughput and concurrent executions.

    Usage:
        governor = AccessGovernor(cache)
        identity = resolve_identity(user_id="u1")

        decision = await governor.check_request(identity)
        if not decision.allowed:
            ...

        async with governor.concurrency_slot(identity):
            await scheduler.run(goal)

        await governor.with_lock("session:abc", 30, critical_section)
    """

    def __init__(
        self,
        cache: CacheAdapter | None = None,
        *,
        window_seconds: float | None = None,
        max_requests: int | None = None,
        token_window_seconds: float | None = None,
        max_tokens: int | None = None,
        max_concurrent: int | None = None,
        concurrency_ttl: int | None = None,
        lock_max_attempts: int | None = None,
        lock_retry_delay: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.window_seconds = window_seconds if window_seconds is not None else settings.rate_limit_window_seconds
        self.max_requests = max_requests if max_requests is not None else settings.rate_limit_max_requests
        self.token_window_seconds = (
            token_window_seconds if token_window_seconds is not None else settings.token_window_seconds
        )
        self.max_tokens = max_tokens if max_tokens is not None else settings.max_tokens_per_window
        self.max_concurrent = max_concurrent if max_concurrent is not None else settings.max_concurrent_executions
        self.concurrency_ttl = concurrency_ttl if concurrency_ttl is not None else settings.concurrency_ttl_seconds
        self.lock_max_attempts = lock_max_attempts if lock_max_attempts is not None else settings.lock_max_attempts
        self.lock_retry_delay = lock_retry_delay if lock_retry_delay is not None else settings.lock_retry_delay_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls) -> AccessGovernor:
        """Governor over the configured cache (Redis when TASKENGINE_REDIS_URL is set)."""
        return cls(create_cache_adapter())

    @property
    def enabled(self) -> bool:
        return self.cache is not None

    # ------------------------------------------------------------------
    # Request rate
    # ------------------------------------------------------------------

    async def check_request(self, identity: str) -> LimitDecision:
        """Count one request against the caller's window."""
        now = self._clock()
        if self.cache is None:
            return self._open(self.max_requests, now + self.window_seconds)

        key = f"ratelimit:requests:{identity}"
        try:
            count = await self.cache.increment(key)
            remaining_ttl = await self.cache.ttl(key)
            if count == 1 or remaining_ttl is None:
                await self.cache.expire(key, self.window_seconds)
                remaining_ttl = self.window_seconds
        except Exception as e:
            logger.warning("Rate limit check failed for %s, allowing: %s", identity, e)
            return self._open(self.max_requests, now + self.window_seconds)

        reset_at = now + remaining_ttl
        if count > self.max_requests:
            logger.info("Rate limit exceeded for %s (%d/%d)", identity, count, self.max_requests)
            return LimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(math.ceil(remaining_ttl), 1),
                current=count,
            )
        return LimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_at=reset_at,
            current=count,
        )

    async def enforce_request(self, identity: str) -> LimitDecision:
        decision = await self.check_request(identity)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        return decision

    # ------------------------------------------------------------------
    # Token budget
    # ------------------------------------------------------------------

    async def check_tokens(self, identity: str, cost: int) -> LimitDecision:
        """Charge ``cost`` tokens unless that would exceed the remaining budget.

        A rejected charge consumes nothing.
        """
        now = self._clock()
        if self.cache is None or self.max_tokens <= 0:
            return self._open(self.max_tokens, now + self.token_window_seconds)

        key = f"ratelimit:tokens:{identity}"

        async def _charge() -> LimitDecision:
            used = int(await self.cache.get(key) or 0)
            remaining_ttl = await self.cache.ttl(key)
            window_left = remaining_ttl if remaining_ttl is not None else self.token_window_seconds
            reset_at = now + window_left
            if used + cost > self.max_tokens:
                return LimitDecision(
                    allowed=False,
                    limit=self.max_tokens,
                    remaining=max(self.max_tokens - used, 0),
                    reset_at=reset_at,
                    retry_after=max(math.ceil(window_left), 1),
                    current=used,
                )
            total = await self.cache.increment(key, cost)
            if remaining_ttl is None:
                await self.cache.expire(key, self.token_window_seconds)
            return LimitDecision(
                allowed=True,
                limit=self.max_tokens,
                remaining=max(self.max_tokens - total, 0),
                reset_at=reset_at,
                current=total,
            )

        try:
            decision = await self.with_lock(f"tokens:{identity}", 5, _charge)
        except Exception as e:
            logger.warning("Token limit check failed for %s, allowing: %s", identity, e)
            return self._open(self.max_tokens, now + self.token_window_seconds)

        if not decision.allowed:
            logger.info("Token budget exhausted for %s (%d used, cost %d)", identity, decision.current, cost)
        return decision

    async def charge_tokens(self, identity: str, cost: int) -> LimitDecision:
        decision = await self.check_tokens(identity, cost)
        if not decision.allowed:
            raise TokenLimitExceeded(decision)
        return decision

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    async def acquire_slot(self, identity: str) -> LimitDecision:
        """Take one execution slot; a rejected attempt leaves the counter unchanged."""
        now = self._clock()
        if self.cache is None:
            return self._open(self.max_concurrent, now)

        key = f"ratelimit:concurrent:{identity}"
        try:
            current = await self.cache.increment(key)
            await self.cache.expire(key, self.concurrency_ttl)
            if current > self.max_concurrent:
                await self.cache.increment(key, -1)
                logger.info("Concurrency limit reached for %s (%d/%d)", identity, current - 1, self.max_concurrent)
                return LimitDecision(
                    allowed=False,
                    limit=self.max_concurrent,
                    remaining=0,
                    reset_at=now,
                    retry_after=1,
                    current=current - 1,
                )
        except Exception as e:
            logger.warning("Concurrency check failed for %s, allowing: %s", identity, e)
            return self._open(self.max_concurrent, now)

        return LimitDecision(
            allowed=True,
            limit=self.max_concurrent,
            remaining=self.max_concurrent - current,
            reset_at=now,
            current=current,
        )

    async def release_slot(self, identity: str) -> None:
        if self.cache is None:
            return
        key = f"ratelimit:concurrent:{identity}"
        try:
            current = await self.cache.increment(key, -1)
            if current <= 0:
                await self.cache.delete(key)
        except Exception as e:
            logger.warning("Failed to release concurrency slot for %s: %s", identity, e)

    @asynccontextmanager
    async def concurrency_slot(self, identity: str) -> AsyncIterator[LimitDecision]:
        """Hold one execution slot for the duration of the block.

        Raises:
            ConcurrencyLimitExceeded: All slots taken.
        """
        decision = await self.acquire_slot(identity)
        if not decision.allowed:
            raise ConcurrencyLimitExceeded(decision)
        try:
            yield decision
        finally:
            await self.release_slot(identity)

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    async def acquire_lock(self, key: str, ttl: float) -> str | None:
        """Owner token for ``key``, or None while another holder has it.

        Without a cache, or when the cache fails, returns UNGUARDED_LOCK.
        """
        if self.cache is None:
            return UNGUARDED_LOCK
        try:
            return await self.cache.acquire_lock(f"lock:{key}", ttl)
        except Exception as e:
            logger.warning("Lock acquisition for %s failed, proceeding unlocked: %s", key, e)
            return UNGUARDED_LOCK

    async def release_lock(self, key: str, token: str) -> bool:
        """Release ``key`` if ``token`` still owns it."""
        if self.cache is None or token == UNGUARDED_LOCK:
            return False
        try:
            released = await self.cache.release_lock(f"lock:{key}", token)
        except Exception as e:
            logger.warning("Lock release for %s failed: %s", key, e)
            return False
        if not released:
            logger.warning("Lock %s expired before release and now belongs to another holder", key)
        return released

    async def with_lock(
        self,
        key: str,
        ttl: float,
        fn: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Run ``fn`` while holding ``key``.

        Retries acquisition with linear backoff (delay * attempt). The lock is
        released whether ``fn`` returns or raises.

        Raises:
            LockAcquisitionError: Lock still held after ``max_attempts``.
        """
        attempts = max_attempts or self.lock_max_attempts
        for attempt in range(1, attempts + 1):
            token = await self.acquire_lock(key, ttl)
            if token is not None:
                break
            if attempt == attempts:
                logger.warning("Giving up on lock %s after %d attempts", key, attempts)
                raise LockAcquisitionError(key, attempts)
            await asyncio.sleep(self.lock_retry_delay * attempt)

        try:
            return await fn()
        finally:
            await self.release_lock(key, token)

    # ------------------------------------------------------------------

    @staticmethod
    def _open(limit: int, reset_at: float) -> LimitDecision:
        return LimitDecision(allowed=True, limit=limit, remaining=limit, reset_at=reset_at)
