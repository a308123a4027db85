"""
Admin API tests: health, stats and invalidation endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from fetchcache.cache import IMMUTABLE
from fetchcache.main import create_app


@pytest.fixture
def client(manager):
    return TestClient(create_app(manager))


def test_health_endpoint_returns_200(client):
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status(client):
    """Test that /health returns status: ok"""
    response = client.get("/health")
    data = response.json()
    assert data["status"] == "ok"


def test_cache_stats_reports_entries(client, manager):
    manager.fetch_with_cache("k", lambda: 1, IMMUTABLE)
    response = client.get("/cache/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["entries"] == 1
    assert data["misses"] == 1


def test_invalidate_key(client, manager):
    calls = []
    producer = lambda: calls.append(1) or len(calls)
    manager.fetch_with_cache("k", producer, IMMUTABLE)

    response = client.post("/cache/invalidate", json={"key": "k"})
    assert response.status_code == 200
    assert response.json() == {"key": "k", "invalidated": True}

    assert manager.fetch_with_cache("k", producer, IMMUTABLE) == 2


def test_invalidate_unknown_key_is_not_an_error(client):
    response = client.post("/cache/invalidate", json={"key": "missing"})
    assert response.status_code == 200
    assert response.json()["invalidated"] is False


def test_invalidate_requires_key(client):
    response = client.post("/cache/invalidate", json={})
    assert response.status_code == 422  # Validation error


def test_invalidate_tag_and_list_keys(client, manager):
    manager.fetch_with_cache("a", lambda: 1, IMMUTABLE, tags=["posts"])
    manager.fetch_with_cache("b", lambda: 2, IMMUTABLE, tags=["posts"])
    manager.fetch_with_cache("c", lambda: 3, IMMUTABLE, tags=["users"])

    listing = client.get("/cache/tags/posts").json()
    assert listing == {"tag": "posts", "keys": ["a", "b"], "count": 2}

    response = client.post("/cache/invalidate/tag/posts")
    assert response.json() == {"tag": "posts", "invalidated": 2}
    assert manager.peek("a").invalidated
    assert not manager.peek("c").invalidated


def test_clear_cache(client, manager):
    manager.fetch_with_cache("a", lambda: 1, IMMUTABLE)
    response = client.post("/cache/clear")
    assert response.json() == {"cleared": 1}


def test_default_app_is_built_on_first_access(monkeypatch):
    from fastapi import FastAPI

    import fetchcache.main as main

    monkeypatch.setattr(main, "_app", None)
    app = main.app
    try:
        assert isinstance(app, FastAPI)
        assert main.app is app
    finally:
        app.state.cache_manager.close()
