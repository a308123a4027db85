"""
fetchcache admin service - FastAPI application exposing cache stats and
invalidation (for webhooks, CLI scripts and admin tools).
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel

from fetchcache import __version__
from fetchcache.cache import CacheManager
from fetchcache.settings import settings

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("main")

APP_NAME = "fetchcache"


class InvalidateKeyRequest(BaseModel):
    key: str


def _manager(request: Request) -> CacheManager:
    return request.app.state.cache_manager


def create_app(cache_manager: Optional[CacheManager] = None) -> FastAPI:
    """
    Build the admin application around a cache manager.

    The application owns the manager's lifecycle: it is closed on shutdown.
    """
    manager = cache_manager or CacheManager.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down cache manager")
        manager.close(wait=False)

    app = FastAPI(
        title=f"{APP_NAME} admin",
        description="Cache statistics and invalidation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.cache_manager = manager

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics."""
        return _manager(request).get_stats()

    @app.get("/cache/tags/{tag}")
    def cache_tag_keys(tag: str, request: Request):
        """List keys currently carrying a tag."""
        keys = sorted(_manager(request).keys_for_tag(tag))
        return {"tag": tag, "keys": keys, "count": len(keys)}

    @app.post("/cache/invalidate")
    def invalidate_key(body: InvalidateKeyRequest, request: Request):
        """Invalidate one key. Unknown keys are not an error."""
        found = _manager(request).invalidate(body.key)
        return {"key": body.key, "invalidated": found}

    @app.post("/cache/invalidate/tag/{tag}")
    def invalidate_tag(tag: str, request: Request):
        """Invalidate every key carrying a tag."""
        count = _manager(request).invalidate_by_tag(tag)
        return {"tag": tag, "invalidated": count}

    @app.post("/cache/clear")
    def clear_cache(request: Request):
        return {"cleared": _manager(request).clear()}

    return app


_app: Optional[FastAPI] = None


def __getattr__(name: str):
    # `uvicorn fetchcache.main:app` builds the default app on first access;
    # importing create_app alone never constructs a manager
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
