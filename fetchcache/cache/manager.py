"""
Main cache orchestration with per-entry policies and stale-while-revalidate.
"""
import threading
import time
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple, Union

from .core import CacheEntry, CacheMeta, CachePolicy, CacheSource, IMMUTABLE, NO_STORE, format_timestamp
from .coalescer import RequestCoalescer
from .invalidator import Invalidator
from .keys import function_key
from .profiles import get_policy_for_profile, policy_from_fetch_options
from .resolver import PolicyResolver, ReadOutcome
from .store import EntryStore

logger = logging.getLogger("cache.manager")

TagsArg = Union[str, Iterable[str]]


def _normalize_tags(tags: Optional[TagsArg]) -> Tuple[str, ...]:
    if not tags:
        return ()
    if isinstance(tags, str):
        return (tags,)
    return tuple(tags)


class BaseCacheManager(ABC):
    """
    State and bookkeeping shared by the threaded and asyncio managers:
    entry store, policy resolution, invalidation, metadata and stats.
    """

    def __init__(
        self,
        store: Optional[EntryStore] = None,
        max_entries: Optional[int] = None,
        default_policy: CachePolicy = IMMUTABLE,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: Entry store to use; a new one is built when omitted
            max_entries: LRU bound for a newly built store (None = unbounded)
            default_policy: Policy for reads that do not pass one
            enabled: False turns every read into a recompute
            clock: Returns the current time in seconds
        """
        self._store = store if store is not None else EntryStore(max_entries=max_entries)
        self._resolver = PolicyResolver()
        self._invalidator = Invalidator(self._store)
        self._default_policy = default_policy
        self._enabled = enabled
        self._clock = clock

        # Stats tracking
        self._stats_lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "invalidated_reads": 0,
            "revalidations": 0,
            "revalidation_failures": 0,
        }

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _resolve_policy(self, policy: Optional[CachePolicy]) -> CachePolicy:
        if not self._enabled:
            return NO_STORE
        return policy if policy is not None else self._default_policy

    def _lookup(
        self, cache_key: str, policy: CachePolicy
    ) -> Tuple[Optional[CacheEntry], ReadOutcome, float, int]:
        now = self._clock()
        entry, generation = self._store.snapshot(cache_key)
        return entry, self._resolver.classify(entry, policy, now), now, generation

    def _writer(
        self,
        cache_key: str,
        policy: CachePolicy,
        tags: Tuple[str, ...],
        generation: int,
    ) -> Optional[Callable[[Any], None]]:
        """
        Store callback for a ticket, or None when the policy forbids storing.

        generation is the one observed before the producer started, so a
        result computed across an invalidation is stored already invalidated.
        """
        if policy.is_no_store:
            return None

        def store(data: Any) -> None:
            self._store.put(
                cache_key, data, policy, tags,
                created_at=self._clock(), generation=generation,
            )

        return store

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    def _log_blocking_read(self, cache_key: str, outcome: ReadOutcome) -> None:
        if outcome is ReadOutcome.INVALID:
            logger.info(f"CACHE INVALIDATED, recomputing: {cache_key}")
            self._count("invalidated_reads")
        else:
            logger.info(f"CACHE MISS: {cache_key}")
        self._count("misses")

    def _make_meta(
        self,
        source: CacheSource,
        policy: CachePolicy,
        entry: Optional[CacheEntry] = None,
        now: Optional[float] = None,
    ) -> CacheMeta:
        """Create cache metadata for response."""
        if entry is not None and now is not None:
            updated_at, age = entry.created_at, entry.age_seconds(now)
        else:
            updated_at, age = self._clock(), 0.0
        return CacheMeta(
            last_updated=format_timestamp(updated_at),
            cache_source=source.value,
            policy=policy.describe(),
            ttl_seconds=policy.ttl_seconds,
            age_seconds=age,
        )

    def invalidate(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry. The next read recomputes
        synchronously.

        Returns:
            True if an entry was found
        """
        return self._invalidator.invalidate_key(cache_key)

    def invalidate_by_tag(self, tag: str) -> int:
        """
        Invalidate all cache entries carrying tag.

        Returns:
            Number of entries invalidated
        """
        return self._invalidator.invalidate_tag(tag)

    def keys_for_tag(self, tag: str) -> Set[str]:
        return self._store.keys_for_tag(tag)

    def peek(self, cache_key: str) -> Optional[CacheEntry]:
        """
        Return the stored entry without judging or refreshing it.

        Lets callers fall back to last-known-good data after a failed
        recomputation.
        """
        return self._store.get(cache_key)

    def remove(self, cache_key: str) -> bool:
        return self._store.remove(cache_key)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        count = self._store.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    @abstractmethod
    def _coalescer_stats(self) -> Dict[str, Any]:
        """Stats of the concrete coalescer (needs a background_keys list)."""

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total_hits = stats["hits_fresh"] + stats["hits_stale"]
        total_requests = total_hits + stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0
        coalescer = self._coalescer_stats()

        stats.update({
            "enabled": self._enabled,
            "entries": len(self._store),
            "tags": len(self._store.tags()),
            "evictions": self._store.evictions,
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": coalescer,
            "revalidating_count": len(coalescer["background_keys"]),
        })
        return stats


class CacheManager(BaseCacheManager):
    """
    Thread-based cache orchestration with:
    - Per-entry policies (immutable, timed revalidation, no-store)
    - Request coalescing for concurrent duplicate requests
    - Stale-while-revalidate, refreshed on a worker pool after a stale read
    - Invalidation by key and by tag
    - Response metadata tracking
    """

    def __init__(
        self,
        max_revalidation_workers: int = 4,
        coalesce_timeout: Optional[float] = None,
        **kwargs: Any,
    ):
        """
        Initialize the cache manager.

        Args:
            max_revalidation_workers: Thread pool size for background revalidation
            coalesce_timeout: Timeout for waiting on coalesced requests
                (None = no timeout)
            **kwargs: Passed to BaseCacheManager
        """
        super().__init__(**kwargs)
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)

        # Background revalidation
        self._revalidation_pool = ThreadPoolExecutor(
            max_workers=max_revalidation_workers,
            thread_name_prefix="cache-revalidate",
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "CacheManager":
        """Build a manager from a fetchcache.settings.Settings instance."""
        return cls(
            max_revalidation_workers=settings.cache_revalidation_workers,
            coalesce_timeout=settings.cache_wait_timeout,
            max_entries=settings.cache_max_entries,
            enabled=settings.cache_enabled,
            default_policy=policy_from_fetch_options(default_cache=settings.default_cache_mode),
        )

    def fetch_with_cache(
        self,
        cache_key: str,
        producer: Callable[[], Any],
        policy: Optional[CachePolicy] = None,
        tags: Optional[TagsArg] = (),
    ) -> Any:
        """
        Get data from cache or compute it with producer.

        Args:
            cache_key: Unique cache key
            producer: Zero-argument function computing the value
            policy: Freshness policy for this key (default: manager default)
            tags: Labels attached to the stored entry for group invalidation

        Returns:
            The cached or freshly produced value

        Raises:
            ProducerError: The producer failed for this caller's computation
        """
        data, _ = self.fetch_with_meta(cache_key, producer, policy, tags)
        return data

    def fetch_with_meta(
        self,
        cache_key: str,
        producer: Callable[[], Any],
        policy: Optional[CachePolicy] = None,
        tags: Optional[TagsArg] = (),
    ) -> Tuple[Any, CacheMeta]:
        """
        Same as fetch_with_cache, also returning access metadata.

        Returns:
            (data, cache_meta) tuple
        """
        policy = self._resolve_policy(policy)
        tags = _normalize_tags(tags)
        entry, outcome, now, generation = self._lookup(cache_key, policy)

        # Cache hit - fresh
        if outcome is ReadOutcome.FRESH:
            logger.debug(f"CACHE HIT (fresh): {cache_key} [age={entry.age_seconds(now):.1f}s]")
            self._count("hits_fresh")
            return entry.value, self._make_meta(CacheSource.FRESH, policy, entry, now)

        # Stale - serve now, refresh in the background
        if outcome is ReadOutcome.STALE:
            logger.info(
                f"CACHE HIT (stale, revalidating): {cache_key} "
                f"[age={entry.age_seconds(now):.1f}s]"
            )
            self._trigger_background_revalidate(
                cache_key, producer, policy, tags, generation
            )
            self._count("hits_stale")
            return entry.value, self._make_meta(CacheSource.STALE, policy, entry, now)

        # Miss, no-store or invalidated - must compute before returning
        self._log_blocking_read(cache_key, outcome)
        data = self._coalescer.get_or_fetch(
            cache_key,
            producer,
            self._writer(cache_key, policy, tags, generation),
            generation=generation,
        )
        return data, self._make_meta(CacheSource.UPSTREAM, policy)

    def _trigger_background_revalidate(
        self,
        cache_key: str,
        producer: Callable[[], Any],
        policy: CachePolicy,
        tags: Tuple[str, ...],
        generation: int,
    ) -> None:
        """Trigger background refresh without blocking."""
        write = self._writer(cache_key, policy, tags, generation)

        def refresh() -> Any:
            try:
                return producer()
            except Exception:
                self._count("revalidation_failures")
                raise

        def on_success(data: Any) -> None:
            write(data)
            self._count("revalidations")
            logger.debug(f"Background revalidation complete: {cache_key}")

        future = self._coalescer.submit(
            cache_key, refresh, on_success, self._revalidation_pool, generation=generation
        )
        if future is None:
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget_pending)

    def _forget_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def is_revalidating(self, cache_key: str) -> bool:
        """True while a producer call is in flight for cache_key."""
        return self._coalescer.is_in_flight(cache_key)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for background revalidations scheduled so far.

        Returns:
            True if all of them finished within timeout
        """
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def close(self, wait: bool = True) -> None:
        """Shut down the revalidation pool. Reads after close still work
        for fresh entries and misses; stale reads raise RuntimeError."""
        self._revalidation_pool.shutdown(wait=wait)
        logger.debug("Cache manager closed")

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _coalescer_stats(self) -> Dict[str, Any]:
        return self._coalescer.get_stats()

    def cached(
        self,
        policy: Optional[CachePolicy] = None,
        profile: Optional[str] = None,
        tags: Union[TagsArg, Callable[..., TagsArg]] = (),
    ) -> Callable:
        """
        Decorator caching a function's results keyed by its identity and arguments.

        Usage:
            @cache.cached(profile="hours", tags=lambda team_id: [f"team:{team_id}"])
            def get_team(team_id): ...

        The wrapped function exposes cache_key(*args, **kwargs) for invalidation.
        """
        if policy is not None and profile is not None:
            raise ValueError("Pass either policy or profile, not both")
        if profile is not None:
            policy = get_policy_for_profile(profile)

        def decorator(fn: Callable) -> Callable:
            @wraps(fn)
            def wrapper(*args, **kwargs):
                key = function_key(fn, args, kwargs)
                resolved_tags = tags(*args, **kwargs) if callable(tags) else tags
                return self.fetch_with_cache(
                    key, lambda: fn(*args, **kwargs), policy=policy, tags=resolved_tags
                )

            wrapper.cache_key = lambda *args, **kwargs: function_key(fn, args, kwargs)
            return wrapper

        return decorator
