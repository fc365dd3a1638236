"""Bounded in-memory cache of synthesized unit audio."""

import logging
from collections import OrderedDict

from ebook_narrator.constants import CACHE_CAPACITY
from ebook_narrator.models import CacheKey

logger = logging.getLogger(__name__)


class UnitCache:
    """Insertion-ordered audio cache with a hard capacity.

    Eviction drops the oldest *inserted* entry; reads do not refresh
    recency. Not thread-safe: share it only between callers running on the
    same event loop.
    """

    def __init__(self, capacity: int = CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[CacheKey, bytes] = OrderedDict()

    def get(self, key: CacheKey) -> bytes | None:
        return self._entries.get(key)

    def put(self, key: CacheKey, audio: bytes) -> None:
        if key in self._entries:
            self._entries[key] = audio  # keeps original insertion slot
            return
        while len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cached audio for %r", evicted.text[:30])
        self._entries[key] = audio

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
