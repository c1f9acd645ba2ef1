"""
Bounded TTL cache.

Entries expire by time only; once full, the least recently used entry is
evicted.
"""
import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    def __init__(self, ttl_seconds: float = 600, max_entries: int = 256,
                 clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: 'OrderedDict[Hashable, Tuple[Any, float]]' = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING:
            self.misses += 1
            return default
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            # Expired, remove from cache
            del self._entries[key]
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any):
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (value, self._clock())
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"[cache] Evicted {evicted}")

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.set(key, value)
        return value

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def stats(self) -> dict:
        return {'size': len(self._entries), 'hits': self.hits, 'misses': self.misses}


def make_key(*parts: Optional[Any]) -> Tuple:
    """Hashable key from strings and (possibly nested) dicts"""
    key = []
    for part in parts:
        if isinstance(part, dict):
            key.append(tuple(sorted((k, v) for k, v in part.items() if v not in (None, ''))))
        else:
            key.append(part)
    return tuple(key)
