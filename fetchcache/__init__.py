"""
fetchcache - cache and revalidation engine for slow computations.
"""
from fetchcache.cache import (
    AsyncCacheManager,
    CacheManager,
    CachePolicy,
    IMMUTABLE,
    NO_STORE,
    ProducerError,
)

__version__ = "0.1.0"

__all__ = [
    "AsyncCacheManager",
    "CacheManager",
    "CachePolicy",
    "IMMUTABLE",
    "NO_STORE",
    "ProducerError",
]
