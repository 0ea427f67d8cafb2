"""Cache factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import MarketflowConfig, load_config
from .base import Cache
from .inmemory import InMemoryCache


def get_cache(
    backend: Optional[str] = None, config: Optional[MarketflowConfig] = None
) -> Cache:
    """Factory function to get the configured cache."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("MARKETFLOW_CACHE")
        or config.cache.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryCache()
    elif backend == "redis":
        from .redis import RedisCache

        redis_conf = config.cache.redis
        return RedisCache(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported cache backend: {backend}")


__all__ = ["Cache", "InMemoryCache", "get_cache"]
