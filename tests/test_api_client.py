"""
Tests for the cached JSON fetch client (HTTP session mocked).
"""
from unittest.mock import Mock

import pytest
import requests

from fetchcache import api_client
from fetchcache.cache import ProducerError, request_key

URL = "https://api.example.com/standings"


def _session(*payloads, error=None):
    """Mock requests session returning payloads in order."""
    responses = []
    for payload in payloads:
        response = Mock()
        response.json.return_value = payload
        response.raise_for_status.return_value = None
        responses.append(response)
    if error is not None:
        response = Mock()
        response.raise_for_status.side_effect = error
        responses.append(response)
    session = Mock()
    session.get.side_effect = responses
    return session


def test_force_cache_fetches_once(manager):
    session = _session({"table": [1, 2]})

    first = api_client.fetch_json(manager, URL, params={"league": 39}, session=session)
    second = api_client.fetch_json(manager, URL, params={"league": 39}, session=session)

    assert first == second == {"table": [1, 2]}
    assert session.get.call_count == 1
    session.get.assert_called_with(
        URL, params={"league": 39}, headers=None, timeout=30.0
    )


def test_no_store_fetches_every_time(manager):
    session = _session({"n": 1}, {"n": 2})

    assert api_client.fetch_json(manager, URL, cache="no-store", session=session) == {"n": 1}
    assert api_client.fetch_json(manager, URL, cache="no-store", session=session) == {"n": 2}
    assert session.get.call_count == 2


def test_none_params_share_cache_entry(manager):
    session = _session({"n": 1})

    api_client.fetch_json(manager, URL, params={"league": 39, "page": None}, session=session)
    api_client.fetch_json(manager, URL, params={"league": 39}, session=session)

    assert session.get.call_count == 1
    session.get.assert_called_with(URL, params={"league": 39}, headers=None, timeout=30.0)


def test_revalidate_serves_stale_then_refreshes(manager, clock):
    session = _session({"n": 1}, {"n": 2})

    api_client.fetch_json(manager, URL, revalidate=60, session=session)
    clock.advance(61)
    data, meta = api_client.fetch_json_with_meta(manager, URL, revalidate=60, session=session)
    assert data == {"n": 1}
    assert meta.cache_source == "stale"

    assert manager.drain(timeout=5)
    assert api_client.fetch_json(manager, URL, revalidate=60, session=session) == {"n": 2}


def test_http_error_surfaces_as_producer_error(manager):
    session = _session(error=requests.HTTPError("503 Service Unavailable"))

    with pytest.raises(ProducerError) as excinfo:
        api_client.fetch_json(manager, URL, session=session)

    assert isinstance(excinfo.value.__cause__, requests.HTTPError)
    assert manager.peek(request_key(URL)) is None


def test_tags_and_invalidate_url(manager):
    session = _session({"v": 1}, {"v": 2}, {"v": 3})

    api_client.fetch_json(manager, URL, params={"league": 39}, tags=["standings"], session=session)
    assert manager.invalidate_by_tag("standings") == 1
    assert api_client.fetch_json(
        manager, URL, params={"league": 39}, tags=["standings"], session=session
    ) == {"v": 2}

    assert api_client.invalidate_url(manager, URL, {"league": 39}) is True
    assert api_client.fetch_json(
        manager, URL, params={"league": 39}, tags=["standings"], session=session
    ) == {"v": 3}
