"""
JSON-over-HTTP fetching through the cache engine.

fetch_json mirrors fetch-style cache options:

    fetch_json(manager, url)                                 # force-cache
    fetch_json(manager, url, cache="no-store")               # always refetch
    fetch_json(manager, url, revalidate=60, tags=["posts"])  # stale after 60s
"""
import logging
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import requests

from fetchcache.cache import CacheManager, CacheMeta, policy_from_fetch_options, request_key
from fetchcache.settings import settings

logger = logging.getLogger("api_client")


def fetch_json_with_meta(
    cache_manager: CacheManager,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    cache: Optional[str] = None,
    revalidate: Optional[Union[int, float, bool]] = None,
    tags: Iterable[str] = (),
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Tuple[Any, CacheMeta]:
    """
    GET url and decode JSON, with caching.

    Args:
        cache_manager: Cache to read from and write to
        url: Absolute URL
        params: Query parameters (None values are dropped)
        cache: "force-cache" or "no-store"
        revalidate: False, 0 or seconds until the response goes stale
        tags: Labels for invalidate_by_tag
        session: requests session to use (default: module-level requests)
        timeout: Request timeout in seconds (default from settings)
        headers: Extra request headers; not part of the cache key

    Returns:
        (data, cache_meta) tuple

    Raises:
        ProducerError: The request failed or returned an error status
    """
    params = {k: v for k, v in (params or {}).items() if v is not None}
    policy = policy_from_fetch_options(
        cache=cache,
        revalidate=revalidate,
        default_cache=settings.default_cache_mode,
    )
    cache_key = request_key(url, params)
    http = session or requests
    request_timeout = timeout if timeout is not None else settings.http_timeout_seconds

    def fetch():
        logger.debug(f"GET {url} params={params}")
        response = http.get(url, params=params, headers=headers, timeout=request_timeout)
        response.raise_for_status()
        return response.json()

    return cache_manager.fetch_with_meta(cache_key, fetch, policy=policy, tags=tags)


def fetch_json(cache_manager: CacheManager, url: str, **kwargs: Any) -> Any:
    """Same as fetch_json_with_meta, returning only the data."""
    data, _ = fetch_json_with_meta(cache_manager, url, **kwargs)
    return data


def invalidate_url(
    cache_manager: CacheManager,
    url: str,
    params: Optional[Dict[str, Any]] = None,
) -> bool:
    """Invalidate the cached response for url + params."""
    return cache_manager.invalidate(request_key(url, params))
