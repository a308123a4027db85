"""
Core cache data structures.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, FrozenSet, Optional
from enum import Enum


class CacheError(Exception):
    """Base class for cache engine errors."""


class InvalidPolicyError(CacheError, ValueError):
    """Raised for a malformed policy, profile name or fetch cache mode."""


class ProducerError(CacheError):
    """
    The producer function failed while computing a value.

    Every caller attached to the failed computation receives the same
    instance. The original exception is available as ``__cause__``.
    """

    def __init__(self, key: str, error: BaseException):
        super().__init__(f"Producer failed for {key}: {error!r}")
        self.key = key
        self.error = error


class PolicyKind(Enum):
    """Freshness rules an entry can be written under."""
    IMMUTABLE = "immutable"                # served until explicitly invalidated
    TIMED_REVALIDATE = "timed_revalidate"  # stale-while-revalidate after ttl
    NO_STORE = "no_store"                  # recomputed on every read


class EntryState(Enum):
    """Derived freshness of a stored entry."""
    FRESH = "fresh"
    STALE = "stale"
    INVALID = "invalid"


class CacheSource(Enum):
    """Source of the value returned to a caller."""
    FRESH = "fresh"       # Served from cache, within policy
    STALE = "stale"       # Served from cache past its ttl, revalidating
    UPSTREAM = "upstream" # Produced during this call


@dataclass(frozen=True)
class CachePolicy:
    """
    Per-entry freshness rule.

    Use the constructors rather than building instances by hand:

        CachePolicy.immutable()
        CachePolicy.timed(ttl_seconds=60)
        CachePolicy.no_store()
    """
    kind: PolicyKind
    ttl_seconds: Optional[float] = None

    def __post_init__(self):
        if self.kind is PolicyKind.TIMED_REVALIDATE:
            if self.ttl_seconds is None or self.ttl_seconds <= 0:
                raise InvalidPolicyError(
                    f"TIMED_REVALIDATE needs a positive ttl, got {self.ttl_seconds!r}"
                )
        elif self.ttl_seconds is not None:
            raise InvalidPolicyError(f"{self.kind.name} does not take a ttl")

    @classmethod
    def immutable(cls) -> "CachePolicy":
        return cls(PolicyKind.IMMUTABLE)

    @classmethod
    def timed(cls, ttl_seconds: float) -> "CachePolicy":
        return cls(PolicyKind.TIMED_REVALIDATE, ttl_seconds)

    @classmethod
    def no_store(cls) -> "CachePolicy":
        return cls(PolicyKind.NO_STORE)

    @property
    def is_no_store(self) -> bool:
        return self.kind is PolicyKind.NO_STORE

    def describe(self) -> str:
        if self.kind is PolicyKind.TIMED_REVALIDATE:
            return f"{self.kind.value}({self.ttl_seconds:g}s)"
        return self.kind.value


IMMUTABLE = CachePolicy.immutable()
NO_STORE = CachePolicy.no_store()


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value with the metadata needed to judge its freshness.

    Entries are immutable snapshots. The store swaps whole entries, so a
    reader never observes a value paired with another write's timestamp.
    """
    value: Any
    created_at: float
    policy: CachePolicy
    tags: FrozenSet[str] = field(default_factory=frozenset)
    invalidated: bool = False

    def age_seconds(self, now: float) -> float:
        """Seconds since the value was produced."""
        return max(0.0, now - self.created_at)

    def is_fresh(self, now: float) -> bool:
        """Check if the value may be served without any recomputation."""
        if self.invalidated or self.policy.is_no_store:
            return False
        if self.policy.kind is PolicyKind.IMMUTABLE:
            return True
        return self.age_seconds(now) < self.policy.ttl_seconds

    def state(self, now: float) -> EntryState:
        """Derive the entry state from policy, age and the invalidation flag."""
        if self.invalidated or self.policy.is_no_store:
            return EntryState.INVALID
        if self.is_fresh(now):
            return EntryState.FRESH
        return EntryState.STALE

    def as_invalidated(self) -> "CacheEntry":
        return replace(self, invalidated=True)


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp
    cache_source: str  # "fresh", "stale", or "upstream"
    policy: Optional[str] = None
    ttl_seconds: Optional[float] = None
    age_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
        }
        # Include debug info if available
        if self.policy:
            result["_debug"] = {
                "policy": self.policy,
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
            }
        return result


def format_timestamp(ts: float) -> str:
    """Render a clock timestamp as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
