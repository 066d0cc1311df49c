"""
Cache and counter storage for the admission layer.
"""

from .cache_store import (
    CacheStore,
    MemoryCacheStore,
    RedisCacheStore,
    create_cache_store,
)

__all__ = [
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "create_cache_store",
]
