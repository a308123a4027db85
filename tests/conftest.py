"""
Shared fixtures for cache tests.
"""
import pytest

from fetchcache.cache import CacheManager

from cache_helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    cache = CacheManager(clock=clock)
    yield cache
    cache.close()
