"""
Proxy caching package.

Cache keys, per-method TTL policy and the in-memory and durable cache stores.
Only values that can never change once observed, or that tolerate a short
staleness window, are cached.
"""

from .cache_key import make_cache_key
from .cache_store import CacheEntry, CacheStore, DurableCacheStore, MemoryCacheStore
from .method_policy import MethodClass, MethodPolicy

__all__ = [
    "CacheEntry",
    "CacheStore",
    "DurableCacheStore",
    "MemoryCacheStore",
    "MethodClass",
    "MethodPolicy",
    "make_cache_key",
]
