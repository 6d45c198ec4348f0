"""Cache adapter selection from settings."""

from __future__ import annotations

import logging

from taskengine.cache.base import CacheAdapter
from taskengine.cache.memory import InMemoryCacheAdapter
from taskengine.config import settings

logger = logging.getLogger(__name__)


def create_cache_adapter(redis_url: str | None = None) -> CacheAdapter:
    """Redis when a URL is configured, otherwise the in-process cache.

    The in-process cache only limits callers of this instance.
    """
    url = redis_url if redis_url is not None else settings.redis_url
    if url:
        from taskengine.cache.redis_cache import RedisCacheAdapter

        return RedisCacheAdapter(url)
    logger.info("No Redis URL configured; access limits are per instance")
    return InMemoryCacheAdapter()
