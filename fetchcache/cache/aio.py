"""
Asyncio variant of the coalescer and cache manager for coroutine producers.

Tickets are tasks. Callers await them through asyncio.shield, so a caller
that is cancelled (or times out) stops waiting without cancelling the
producer or the other callers attached to the same ticket.
"""
import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from .core import CacheMeta, CachePolicy, CacheSource, ProducerError
from .keys import function_key
from .manager import BaseCacheManager, TagsArg, _normalize_tags
from .profiles import get_policy_for_profile
from .resolver import ReadOutcome

logger = logging.getLogger("cache.aio")

AsyncProducer = Callable[[], Awaitable[Any]]


class AsyncRequestCoalescer:
    """
    Ensures concurrent coroutines for the same cache key share one producer call.

    Must be used from a single event loop.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Max seconds a caller waits on a ticket (None = no limit)
        """
        self._in_flight: Dict[str, "asyncio.Task[Any]"] = {}
        self._background: Set[str] = set()
        # Store invalidation generation each ticket started under
        self._generations: Dict[str, int] = {}
        self._timeout = timeout

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: AsyncProducer,
        on_success: Optional[Callable[[Any], None]] = None,
        generation: int = 0,
    ) -> Any:
        """
        Either join an existing in-flight ticket or start a new one.

        A ticket started under an older invalidation generation than the
        caller observed is waited out and replaced, never joined.

        Raises:
            ProducerError: If fetch_fn raised
            asyncio.TimeoutError: If the configured timeout elapsed
        """
        task = self._in_flight.get(cache_key)
        while task is not None and self._generations.get(cache_key, 0) < generation:
            logger.debug(f"Waiting out outdated ticket for {cache_key}")
            _, pending = await asyncio.wait({task}, timeout=self._timeout)
            if pending:
                raise asyncio.TimeoutError(
                    f"Request for {cache_key} timed out after {self._timeout}s"
                )
            task = self._in_flight.get(cache_key)

        if task is None:
            logger.debug(f"Initiating fetch for {cache_key}")
            task = self._start(cache_key, fetch_fn, on_success, generation=generation)
        else:
            logger.debug(f"Coalescing request for {cache_key}")

        if self._timeout is None:
            return await asyncio.shield(task)
        return await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)

    def submit(
        self,
        cache_key: str,
        fetch_fn: AsyncProducer,
        on_success: Optional[Callable[[Any], None]],
        generation: int = 0,
    ) -> Optional["asyncio.Task[Any]"]:
        """
        Start a background ticket unless one is in flight.

        Returns:
            The new task, or None if a ticket was already in flight
        """
        if cache_key in self._in_flight:
            logger.debug(f"Refresh already in flight: {cache_key}")
            return None
        logger.debug(f"Scheduling background fetch for {cache_key}")
        return self._start(
            cache_key, fetch_fn, on_success, background=True, generation=generation
        )

    def is_in_flight(self, cache_key: str) -> bool:
        return cache_key in self._in_flight

    def background_tasks(self) -> Set["asyncio.Task[Any]"]:
        return {self._in_flight[key] for key in self._background if key in self._in_flight}

    def _start(
        self,
        cache_key: str,
        fetch_fn: AsyncProducer,
        on_success: Optional[Callable[[Any], None]],
        background: bool = False,
        generation: int = 0,
    ) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(self._run(cache_key, fetch_fn, on_success))
        self._in_flight[cache_key] = task
        self._generations[cache_key] = generation
        if background:
            self._background.add(cache_key)
        task.add_done_callback(_consume_exception)
        return task

    async def _run(
        self,
        cache_key: str,
        fetch_fn: AsyncProducer,
        on_success: Optional[Callable[[Any], None]],
    ) -> Any:
        try:
            try:
                result = await fetch_fn()
            except Exception as e:
                raise ProducerError(cache_key, e) from e
            if on_success is not None:
                on_success(result)
            return result
        except Exception as e:
            logger.warning(f"Fetch failed for {cache_key}: {e}")
            raise
        finally:
            # Clear the ticket before any waiter resumes
            if self._in_flight.get(cache_key) is asyncio.current_task():
                del self._in_flight[cache_key]
                self._generations.pop(cache_key, None)
                self._background.discard(cache_key)

    @property
    def active_requests(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
            "background_keys": [key for key in self._in_flight if key in self._background],
        }


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Background tickets may fail with nobody awaiting them; the failure is
    # already logged, so mark it retrieved.
    if not task.cancelled():
        task.exception()


class AsyncCacheManager(BaseCacheManager):
    """
    Cache orchestration for coroutine producers.

    Same policies, invalidation and stats as CacheManager; background
    revalidation runs as tasks on the caller's event loop.
    """

    def __init__(self, coalesce_timeout: Optional[float] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._coalescer = AsyncRequestCoalescer(timeout=coalesce_timeout)

    async def fetch_with_cache(
        self,
        cache_key: str,
        producer: AsyncProducer,
        policy: Optional[CachePolicy] = None,
        tags: Optional[TagsArg] = (),
    ) -> Any:
        data, _ = await self.fetch_with_meta(cache_key, producer, policy, tags)
        return data

    async def fetch_with_meta(
        self,
        cache_key: str,
        producer: AsyncProducer,
        policy: Optional[CachePolicy] = None,
        tags: Optional[TagsArg] = (),
    ) -> Tuple[Any, CacheMeta]:
        policy = self._resolve_policy(policy)
        tags = _normalize_tags(tags)
        entry, outcome, now, generation = self._lookup(cache_key, policy)

        if outcome is ReadOutcome.FRESH:
            logger.debug(f"CACHE HIT (fresh): {cache_key}")
            self._count("hits_fresh")
            return entry.value, self._make_meta(CacheSource.FRESH, policy, entry, now)

        if outcome is ReadOutcome.STALE:
            logger.info(f"CACHE HIT (stale, revalidating): {cache_key}")
            self._trigger_background_revalidate(
                cache_key, producer, policy, tags, generation
            )
            self._count("hits_stale")
            return entry.value, self._make_meta(CacheSource.STALE, policy, entry, now)

        self._log_blocking_read(cache_key, outcome)
        data = await self._coalescer.get_or_fetch(
            cache_key,
            producer,
            self._writer(cache_key, policy, tags, generation),
            generation=generation,
        )
        return data, self._make_meta(CacheSource.UPSTREAM, policy)

    def _trigger_background_revalidate(
        self,
        cache_key: str,
        producer: AsyncProducer,
        policy: CachePolicy,
        tags: Tuple[str, ...],
        generation: int,
    ) -> None:
        write = self._writer(cache_key, policy, tags, generation)

        async def refresh() -> Any:
            try:
                return await producer()
            except Exception:
                self._count("revalidation_failures")
                raise

        def on_success(data: Any) -> None:
            write(data)
            self._count("revalidations")

        self._coalescer.submit(cache_key, refresh, on_success, generation=generation)

    def is_revalidating(self, cache_key: str) -> bool:
        return self._coalescer.is_in_flight(cache_key)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for background revalidations scheduled so far.

        Returns:
            True if all of them finished within timeout
        """
        tasks = self._coalescer.background_tasks()
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def close(self) -> None:
        await self.drain()

    def _coalescer_stats(self) -> Dict[str, Any]:
        return self._coalescer.get_stats()

    def cached(
        self,
        policy: Optional[CachePolicy] = None,
        profile: Optional[str] = None,
        tags: Union[TagsArg, Callable[..., TagsArg]] = (),
    ) -> Callable:
        """Decorator for coroutine functions; see CacheManager.cached."""
        if policy is not None and profile is not None:
            raise ValueError("Pass either policy or profile, not both")
        if profile is not None:
            policy = get_policy_for_profile(profile)

        def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            @wraps(fn)
            async def wrapper(*args, **kwargs):
                key = function_key(fn, args, kwargs)
                resolved_tags = tags(*args, **kwargs) if callable(tags) else tags
                return await self.fetch_with_cache(
                    key, lambda: fn(*args, **kwargs), policy=policy, tags=resolved_tags
                )

            wrapper.cache_key = lambda *args, **kwargs: function_key(fn, args, kwargs)
            return wrapper

        return decorator
