"""
Manual invalidation by key or by tag.
"""
import logging

from .store import EntryStore

logger = logging.getLogger("cache.invalidator")


class Invalidator:
    """
    Forces subsequent reads to bypass cached data.

    Invalidated entries stay in the store with their invalidation flag set:
    the next read recomputes synchronously, and the last good value remains
    available to callers that want to fall back to it.
    """

    def __init__(self, store: EntryStore):
        self._store = store

    def invalidate_key(self, cache_key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if an entry was found and flagged
        """
        found = self._store.mark_invalid(cache_key)
        if found:
            logger.info(f"Invalidated cache: {cache_key}")
        return found

    def invalidate_tag(self, tag: str) -> int:
        """
        Invalidate every entry currently tagged with tag.

        Returns:
            Number of entries invalidated
        """
        count = 0
        for cache_key in self._store.keys_for_tag(tag):
            if self.invalidate_key(cache_key):
                count += 1
        if count:
            logger.info(f"Invalidated {count} entries tagged '{tag}'")
        return count
