"""
Per-account TTL cache
Holds short-lived platform lookups (payment method ids, live ad counts) keyed
by trading account id. Each cache belongs to the component that fills it.
"""

import logging
import time
from typing import Any, Callable, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class SimpleCache:
    """In-memory TTL cache; the clock is injectable for tests"""

    def __init__(self, default_ttl: int = 300, name: str = "cache", clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self.name = name
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            self.stats["evictions"] += 1
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._live_entry(key)
        if entry is None:
            self.stats["misses"] += 1
            return default
        self.stats["hits"] += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[key] = _Entry(value, self._clock() + lifetime)
        self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        """Drop one account's entry; False when nothing was cached"""
        if self._entries.pop(key, _MISSING) is _MISSING:
            return False
        self.stats["deletes"] += 1
        return True

    def clear(self) -> None:
        self.stats["deletes"] += len(self._entries)
        self._entries.clear()

    def exists(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def cleanup_expired(self) -> int:
        """Evict every expired entry and return the count"""
        now = self._clock()
        stale = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in stale:
            del self._entries[key]
        self.stats["evictions"] += len(stale)
        if stale:
            logger.debug(f"🧹 CACHE_CLEANUP: {self.name} evicted {len(stale)} entries")
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "name": self.name,
            "total_requests": lookups,
            "hit_rate_percent": round(self.stats["hits"] / lookups * 100, 2) if lookups else 0,
            "cache_size": len(self._entries),
        }
