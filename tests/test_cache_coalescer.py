"""
Tests for request coalescing (single-flight).
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from fetchcache.cache import ProducerError, RequestCoalescer


def _wait_for_waiters(coalescer, key, count, deadline=5.0):
    """Block until count callers have attached to key's ticket."""
    end = time.time() + deadline
    while time.time() < end:
        with coalescer._lock:
            in_flight = coalescer._in_flight.get(key)
            if in_flight is not None and in_flight.waiter_count >= count:
                return
        time.sleep(0.005)
    raise AssertionError(f"{count} waiters never attached to {key}")


def test_single_call_returns_result():
    coalescer = RequestCoalescer()
    assert coalescer.get_or_fetch("k", lambda: 42) == 42
    assert coalescer.active_requests == 0


def test_concurrent_callers_share_one_call():
    coalescer = RequestCoalescer()
    release = threading.Event()
    calls = []

    def producer():
        calls.append(1)
        release.wait(5)
        return {"data": "shared"}

    def caller():
        return coalescer.get_or_fetch("k", producer)

    with ThreadPoolExecutor(max_workers=10) as pool:
        futures = [pool.submit(caller) for _ in range(10)]
        _wait_for_waiters(coalescer, "k", 9)
        release.set()
        results = [f.result(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(r is results[0] for r in results)


def test_concurrent_callers_share_same_error():
    coalescer = RequestCoalescer()
    release = threading.Event()
    calls = []

    def producer():
        calls.append(1)
        release.wait(5)
        raise ConnectionError("upstream down")

    def caller():
        return coalescer.get_or_fetch("k", producer)

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(caller) for _ in range(8)]
        _wait_for_waiters(coalescer, "k", 7)
        release.set()
        errors = [f.exception(timeout=5) for f in futures]

    assert len(calls) == 1
    assert all(isinstance(e, ProducerError) for e in errors)
    assert all(e is errors[0] for e in errors)
    assert isinstance(errors[0].__cause__, ConnectionError)
    assert errors[0].key == "k"


def test_failure_is_not_cached():
    coalescer = RequestCoalescer()

    with pytest.raises(ProducerError):
        coalescer.get_or_fetch("k", lambda: 1 / 0)

    assert not coalescer.is_in_flight("k")
    assert coalescer.get_or_fetch("k", lambda: "recovered") == "recovered"


def test_on_success_runs_before_ticket_clears():
    coalescer = RequestCoalescer()
    observed = []

    def on_success(value):
        observed.append((value, coalescer.is_in_flight("k")))

    coalescer.get_or_fetch("k", lambda: "v", on_success)

    assert observed == [("v", True)]
    assert not coalescer.is_in_flight("k")


def test_on_success_not_called_on_failure():
    coalescer = RequestCoalescer()
    observed = []

    with pytest.raises(ProducerError):
        coalescer.get_or_fetch("k", lambda: 1 / 0, observed.append)
    assert observed == []


def test_waiter_timeout_does_not_affect_producer():
    coalescer = RequestCoalescer(timeout=0.05)
    release = threading.Event()
    calls = []

    def producer():
        calls.append(1)
        release.wait(5)
        return "slow"

    with ThreadPoolExecutor(max_workers=2) as pool:
        initiator = pool.submit(coalescer.get_or_fetch, "k", producer)
        while not coalescer.is_in_flight("k"):
            time.sleep(0.005)
        with pytest.raises(TimeoutError):
            coalescer.get_or_fetch("k", producer)
        release.set()
        assert initiator.result(timeout=5) == "slow"

    assert len(calls) == 1


def test_submit_skips_when_ticket_in_flight():
    coalescer = RequestCoalescer()
    release = threading.Event()
    stored = []

    def producer():
        release.wait(5)
        return "fresh"

    with ThreadPoolExecutor(max_workers=2) as pool:
        future = coalescer.submit("k", producer, stored.append, pool)
        assert future is not None
        assert coalescer.submit("k", producer, stored.append, pool) is None
        assert coalescer.get_stats()["background_keys"] == ["k"]
        release.set()
        future.result(timeout=5)

    assert stored == ["fresh"]
    assert coalescer.active_requests == 0


def test_foreground_caller_joins_background_ticket():
    coalescer = RequestCoalescer()
    release = threading.Event()
    calls = []

    def producer():
        calls.append(1)
        release.wait(5)
        return "bg"

    with ThreadPoolExecutor(max_workers=2) as pool:
        coalescer.submit("k", producer, None, pool)
        waiter = pool.submit(coalescer.get_or_fetch, "k", lambda: "fg")
        _wait_for_waiters(coalescer, "k", 1)
        release.set()
        assert waiter.result(timeout=5) == "bg"

    assert len(calls) == 1



def test_caller_with_newer_generation_waits_out_older_ticket():
    coalescer = RequestCoalescer()
    release = threading.Event()

    def old_producer():
        release.wait(5)
        return "old"

    with ThreadPoolExecutor(max_workers=2) as pool:
        coalescer.submit("k", old_producer, None, pool, generation=0)
        waiter = pool.submit(coalescer.get_or_fetch, "k", lambda: "new", None, 1)
        _wait_for_waiters(coalescer, "k", 1)
        release.set()
        assert waiter.result(timeout=5) == "new"

    assert coalescer.active_requests == 0


class Abort(BaseException):
    pass


def test_base_exception_reaches_initiator_and_waiters():
    coalescer = RequestCoalescer()
    release = threading.Event()
    abort = Abort("shutting down")

    def producer():
        release.wait(5)
        raise abort

    def caller():
        return coalescer.get_or_fetch("k", producer)

    with ThreadPoolExecutor(max_workers=3) as pool:
        futures = [pool.submit(caller) for _ in range(3)]
        _wait_for_waiters(coalescer, "k", 2)
        release.set()
        errors = [f.exception(timeout=5) for f in futures]

    assert all(e is abort for e in errors)
    assert coalescer.active_requests == 0
