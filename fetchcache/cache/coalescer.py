"""
Request coalescing to prevent duplicate producer calls.

When multiple concurrent requests ask for the same key, only one
producer call is made and all requesters share the result.
"""
import threading
import time
import logging
from concurrent.futures import Executor, Future
from typing import Dict, Optional, Callable, Any, Tuple
from dataclasses import dataclass, field

from .core import ProducerError

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress producer call (one ticket per key)."""
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0
    background: bool = False
    # Store invalidation generation observed when the ticket started
    generation: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one producer call.

    Pattern:
    - First request for a key creates a ticket and runs the producer
    - Subsequent requests for the same key wait on the ticket's Event
    - On success on_success (the store write) runs, the ticket is cleared,
      then all waiters receive the same result
    - On failure the ticket is cleared and all waiters receive the same
      ProducerError; nothing is written

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.get_or_fetch(
            cache_key="standings:...",
            fetch_fn=lambda: make_api_call(),
        )
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a waiter blocks on someone else's ticket.
                None waits as long as the producer takes. Giving up never
                affects the producer or the other waiters.
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]] = None,
        generation: int = 0,
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Function to call if we need to fetch
            on_success: Called with the result before waiters are released
            generation: Invalidation generation the caller observed. A
                ticket started under an older generation is waited out,
                not joined.

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            TimeoutError: If waiting for in-flight request times out
            ProducerError: If fetch_fn raised
        """
        in_flight, is_initiator = self._acquire(cache_key, generation)
        while not is_initiator and in_flight.generation < generation:
            # Started before an invalidation: its result is already stale
            logger.debug(f"Waiting out outdated ticket for {cache_key}")
            self._wait(cache_key, in_flight)
            in_flight, is_initiator = self._acquire(cache_key, generation)

        if is_initiator:
            # We're the initiator - perform the fetch
            self._execute(cache_key, in_flight, fetch_fn, on_success)
        else:
            # We're a waiter - wait for the initiator to complete
            self._wait(cache_key, in_flight)

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def submit(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]],
        executor: Executor,
        generation: int = 0,
    ) -> Optional[Future]:
        """
        Start a background ticket for cache_key unless one is in flight.

        Callers arriving while the ticket runs attach to it through
        get_or_fetch like any other waiter.

        Returns:
            The scheduled future, or None if a ticket was already in flight
        """
        with self._lock:
            if cache_key in self._in_flight:
                logger.debug(f"Refresh already in flight: {cache_key}")
                return None
            in_flight = InFlightRequest(background=True, generation=generation)
            self._in_flight[cache_key] = in_flight

        logger.debug(f"Scheduling background fetch for {cache_key}")
        try:
            return executor.submit(self._execute, cache_key, in_flight, fetch_fn, on_success)
        except RuntimeError as e:
            # Executor shut down: release the ticket so readers are not stuck
            in_flight.error = e
            self._release(cache_key, in_flight)
            raise

    def is_in_flight(self, cache_key: str) -> bool:
        with self._lock:
            return cache_key in self._in_flight

    def _acquire(self, cache_key: str, generation: int = 0) -> Tuple[InFlightRequest, bool]:
        with self._lock:
            if cache_key in self._in_flight:
                # Join existing request
                in_flight = self._in_flight[cache_key]
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {cache_key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
                return in_flight, False

            # Start new request
            in_flight = InFlightRequest(generation=generation)
            self._in_flight[cache_key] = in_flight
            logger.debug(f"Initiating fetch for {cache_key}")
            return in_flight, True

    def _execute(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        fetch_fn: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]],
    ) -> None:
        try:
            try:
                result = fetch_fn()
            except Exception as e:
                raise ProducerError(cache_key, e) from e
            if on_success is not None:
                on_success(result)
            in_flight.result = result
        except Exception as e:
            in_flight.error = e
            logger.warning(f"Fetch failed for {cache_key}: {e}")
        except BaseException as e:
            # Waiters see the same interruption; the initiator still propagates it
            in_flight.error = e
            logger.warning(f"Fetch interrupted for {cache_key}: {e!r}")
            raise
        finally:
            self._release(cache_key, in_flight)

    def _wait(self, cache_key: str, in_flight: InFlightRequest) -> None:
        completed = in_flight.event.wait(timeout=self._timeout)
        if not completed:
            logger.error(f"Timeout waiting for coalesced request: {cache_key}")
            raise TimeoutError(
                f"Request for {cache_key} timed out after {self._timeout}s"
            )

    def _release(self, cache_key: str, in_flight: InFlightRequest) -> None:
        # Clear the ticket first so late arrivals see the stored entry
        with self._lock:
            if self._in_flight.get(cache_key) is in_flight:
                del self._in_flight[cache_key]
        # Signal completion to all waiters
        in_flight.event.set()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "background_keys": [
                    key for key, req in self._in_flight.items() if req.background
                ],
            }
