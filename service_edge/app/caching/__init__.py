"""
Response cache with dynamic tag-based invalidation.
"""

from .engine import ResponseCacheEngine
from .keys import CacheKeyDeriver, cache_policy, is_identifier
from .middleware import ResponseCacheMiddleware
from .models import CacheEntry
from .tag_index import TagIndex

__all__ = [
    "CacheEntry",
    "CacheKeyDeriver",
    "ResponseCacheEngine",
    "ResponseCacheMiddleware",
    "TagIndex",
    "cache_policy",
    "is_identifier",
]
