"""
Caching engine with per-entry policies, request coalescing,
stale-while-revalidate and tag invalidation.
"""
from .core import (
    CacheEntry,
    CacheError,
    CacheMeta,
    CachePolicy,
    CacheSource,
    EntryState,
    IMMUTABLE,
    InvalidPolicyError,
    NO_STORE,
    PolicyKind,
    ProducerError,
)
from .keys import fingerprint, function_key, make_cache_key, request_key
from .store import EntryStore
from .resolver import PolicyResolver, ReadOutcome
from .profiles import (
    CACHE_PROFILES,
    get_policy_for_profile,
    policy_from_fetch_options,
)
from .coalescer import RequestCoalescer
from .invalidator import Invalidator
from .manager import CacheManager
from .aio import AsyncCacheManager, AsyncRequestCoalescer

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CachePolicy",
    "CacheSource",
    "EntryState",
    "PolicyKind",
    "IMMUTABLE",
    "NO_STORE",
    # Errors
    "CacheError",
    "InvalidPolicyError",
    "ProducerError",
    # Keys
    "fingerprint",
    "function_key",
    "make_cache_key",
    "request_key",
    # Components
    "EntryStore",
    "PolicyResolver",
    "ReadOutcome",
    "RequestCoalescer",
    "Invalidator",
    # Profiles
    "CACHE_PROFILES",
    "get_policy_for_profile",
    "policy_from_fetch_options",
    # Managers
    "CacheManager",
    "AsyncCacheManager",
    "AsyncRequestCoalescer",
]
