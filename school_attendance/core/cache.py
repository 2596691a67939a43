"""Summary read cache, keyed by the exact summary key."""

import time
from collections import OrderedDict
from typing import Any, Optional, Protocol

from school_attendance.core.config import (
    SUMMARY_CACHE_MAX_ENTRIES,
    SUMMARY_CACHE_TTL_SECONDS,
)


class SummaryCache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def invalidate(self, key: str) -> None: ...


class InMemorySummaryCache:
    """TTL + LRU bounded dict; one per process"""

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 10000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if expires_at < time.monotonic():
            self._entries.pop(key, None)
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (time.monotonic() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


summary_cache = InMemorySummaryCache(
    ttl_seconds=SUMMARY_CACHE_TTL_SECONDS, max_entries=SUMMARY_CACHE_MAX_ENTRIES
)
