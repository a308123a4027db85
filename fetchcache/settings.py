"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables (FETCHCACHE_*)."""

    # Cache engine
    cache_enabled: bool = True
    cache_max_entries: Optional[int] = None      # None = unbounded
    cache_revalidation_workers: int = 4
    cache_wait_timeout: Optional[float] = None   # None = wait for the producer

    # Policy used when a caller gives no cache options ("force-cache" or "no-store")
    default_cache_mode: str = "force-cache"

    # HTTP fetch client
    http_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "FETCHCACHE_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
