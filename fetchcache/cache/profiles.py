"""
Named cache profiles and fetch-option to policy mapping.
"""
import logging
from typing import Any, Dict, Optional, Union

from .core import CachePolicy, InvalidPolicyError, IMMUTABLE, NO_STORE

logger = logging.getLogger("cache.profiles")


# Revalidation profiles (in seconds)
CACHE_PROFILES: Dict[str, Dict[str, Any]] = {
    "default": {
        "revalidate": 900,        # 15 minutes
    },
    "seconds": {
        "revalidate": 1,
    },
    "minutes": {
        "revalidate": 60,
    },
    "hours": {
        "revalidate": 3600,
    },
    "days": {
        "revalidate": 86400,
    },
    "weeks": {
        "revalidate": 604800,
    },
    "max": {
        "revalidate": 2592000,    # 30 days
    },
}

FORCE_CACHE = "force-cache"
NO_STORE_MODE = "no-store"
CACHE_MODES = (FORCE_CACHE, NO_STORE_MODE)


def get_policy_for_profile(profile: str) -> CachePolicy:
    """
    Get the timed revalidation policy for a named profile.

    Args:
        profile: One of the CACHE_PROFILES names ("minutes", "hours", ...)

    Returns:
        CachePolicy with the profile's ttl

    Raises:
        InvalidPolicyError: Unknown profile name
    """
    config = CACHE_PROFILES.get(profile)
    if config is None:
        raise InvalidPolicyError(
            f"Unknown cache profile {profile!r}; expected one of {sorted(CACHE_PROFILES)}"
        )
    return CachePolicy.timed(config["revalidate"])


def policy_from_fetch_options(
    cache: Optional[str] = None,
    revalidate: Optional[Union[int, float, bool]] = None,
    default_cache: str = FORCE_CACHE,
) -> CachePolicy:
    """
    Translate fetch-style options into a cache policy.

    Args:
        cache: "force-cache" or "no-store"; None falls back to default_cache
        revalidate: False = cache indefinitely, 0 = never cache,
            N > 0 = revalidate after N seconds
        default_cache: Mode used when neither option is given

    Returns:
        The resulting CachePolicy
    """
    if cache is not None and cache not in CACHE_MODES:
        raise InvalidPolicyError(f"Unknown cache mode {cache!r}; expected one of {CACHE_MODES}")

    # bool is checked first: False is an int in Python
    if revalidate is False:
        if cache == NO_STORE_MODE:
            return NO_STORE
        return IMMUTABLE

    if revalidate is not None and revalidate is not True:
        if revalidate < 0:
            raise InvalidPolicyError(f"revalidate must be >= 0, got {revalidate}")
        if revalidate == 0:
            return NO_STORE
        if cache == NO_STORE_MODE:
            logger.warning(
                f"Ignoring revalidate={revalidate} because cache='no-store' was given"
            )
            return NO_STORE
        return CachePolicy.timed(revalidate)

    mode = cache or default_cache
    if mode not in CACHE_MODES:
        raise InvalidPolicyError(f"Unknown default cache mode {mode!r}")
    return NO_STORE if mode == NO_STORE_MODE else IMMUTABLE
