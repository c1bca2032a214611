# market_price/cache.py
"""Short-lived in-process memo for price calculation results."""
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

DEFAULT_TTL_SECONDS = float(os.getenv("PRICE_CACHE_TTL_SECONDS", 15 * 60))
DEFAULT_MAX_ENTRIES = int(os.getenv("PRICE_CACHE_MAX_ENTRIES", 1000))


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class ResultCache:
    """TTL cache with a hard size cap.

    Entries expire `ttl_seconds` after insertion. When an insert pushes the
    map over `max_entries`, the oldest inserted keys are dropped right there,
    in the caller's task.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, max_entries: int = DEFAULT_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Any, CacheEntry]" = OrderedDict()

    def get(self, key) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key, value):
        # re-inserting moves the key to the young end
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value, self._clock())
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None
