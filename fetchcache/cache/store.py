"""
Thread-safe entry store with a secondary tag index.
"""
import threading
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .core import CacheEntry, CachePolicy

logger = logging.getLogger("cache.store")


class EntryStore:
    """
    Maps cache keys to CacheEntry snapshots and tags to sets of keys.

    All mutation goes through put/remove/mark_invalid/clear under one lock,
    so a concurrent get or keys_for_tag never sees a half-applied write.

    When max_entries is set the store evicts the least recently used entry
    on put. Reads refresh recency. Without it the store is unbounded.
    """

    def __init__(self, max_entries: Optional[int] = None):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()
        self._max_entries = max_entries
        self._evictions = 0
        # Bumped by every invalidation; writes started under an older
        # generation land already invalidated
        self._generations: Dict[str, int] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the current entry for key, or None on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._max_entries is not None:
                self._entries.move_to_end(key)
            return entry

    def snapshot(self, key: str) -> Tuple[Optional[CacheEntry], int]:
        """Entry (as get) and its invalidation generation, read atomically."""
        with self._lock:
            return self.get(key), self._generations.get(key, 0)

    def generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def put(
        self,
        key: str,
        value: Any,
        policy: CachePolicy,
        tags: Iterable[str] = (),
        created_at: float = 0.0,
        generation: Optional[int] = None,
    ) -> CacheEntry:
        """
        Replace any existing entry for key and re-index its tags.

        Args:
            generation: Generation observed when the value's computation
                started. If the key was invalidated since, the entry is
                stored with its invalidation flag set.
        """
        with self._lock:
            current = self._generations.get(key, 0)
            entry = CacheEntry(
                value=value,
                created_at=created_at,
                policy=policy,
                tags=frozenset(tags),
                invalidated=generation is not None and generation != current,
            )
            previous = self._entries.get(key)
            if previous is not None:
                self._unindex(key, previous.tags - entry.tags)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)
            self._evict_overflow()
        return entry

    def remove(self, key: str) -> bool:
        """
        Delete the entry and its tag associations.

        Returns:
            True if an entry was present
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._unindex(key, entry.tags)
            self._generations.pop(key, None)
            return True

    def mark_invalid(self, key: str) -> bool:
        """Flag the entry as explicitly invalidated. No-op for absent keys."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            self._generations[key] = self._generations.get(key, 0) + 1
            if not entry.invalidated:
                self._entries[key] = entry.as_invalidated()
            return True

    def keys_for_tag(self, tag: str) -> Set[str]:
        """Snapshot of the keys currently carrying tag."""
        with self._lock:
            return set(self._tag_index.get(tag, ()))

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def tags(self) -> List[str]:
        with self._lock:
            return sorted(self._tag_index.keys())

    def clear(self) -> int:
        """
        Drop every entry.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._tag_index.clear()
            self._generations.clear()
            return count

    @property
    def evictions(self) -> int:
        return self._evictions

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def _unindex(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]

    def _evict_overflow(self) -> None:
        if self._max_entries is None:
            return
        while len(self._entries) > self._max_entries:
            key, entry = self._entries.popitem(last=False)
            self._unindex(key, entry.tags)
            self._generations.pop(key, None)
            self._evictions += 1
            logger.debug(f"Evicted {key} (max_entries={self._max_entries})")
