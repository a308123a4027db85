"""
Read-time classification of cache lookups.
"""
from enum import Enum
from typing import Optional

from .core import CacheEntry, CachePolicy, PolicyKind


class ReadOutcome(Enum):
    """What a read must do with the entry it found."""
    MISS = "miss"        # No usable entry: block on the coalescer
    FRESH = "fresh"      # Serve the stored value as is
    STALE = "stale"      # Serve the stored value, refresh in the background
    INVALID = "invalid"  # Explicitly invalidated: block on the coalescer


class PolicyResolver:
    """
    Decides whether a stored entry is servable for a read.

    The policy passed with the read is authoritative. It is the
    configuration the caller wants applied to this key now, and it
    replaces the stored policy when the recomputed value is written.
    """

    def classify(
        self,
        entry: Optional[CacheEntry],
        policy: CachePolicy,
        now: float,
    ) -> ReadOutcome:
        if policy.is_no_store or entry is None:
            return ReadOutcome.MISS

        # Explicit invalidation means the value may be wrong, not just aged
        if entry.invalidated:
            return ReadOutcome.INVALID

        if policy.kind is PolicyKind.IMMUTABLE:
            return ReadOutcome.FRESH

        if entry.age_seconds(now) < policy.ttl_seconds:
            return ReadOutcome.FRESH
        return ReadOutcome.STALE

    @staticmethod
    def blocks_caller(outcome: ReadOutcome) -> bool:
        """True when the reader has to wait for a producer call."""
        return outcome in (ReadOutcome.MISS, ReadOutcome.INVALID)
