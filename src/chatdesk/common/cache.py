"""Bounded in-process cache with per-entry expiry."""

import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """LRU cache whose entries also expire ``ttl`` seconds after insertion.

    Not thread-safe; callers share one event loop.
    """

    def __init__(
        self,
        maxsize: int = 1024,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            self.misses += 1
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        self._data[key] = (expires_at, value)
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)
            self.evictions += 1

    def pop(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def discard_where(self, predicate: Callable[[Hashable, V], bool]) -> int:
        """Drop every entry for which ``predicate(key, value)`` holds."""
        doomed = [k for k, (_, v) in self._data.items() if predicate(k, v)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key, _MISSING)
        return entry is not _MISSING and self._clock() < entry[0]

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._data),
            "maxSize": self.maxsize,
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRate": round(self.hits / lookups, 4) if lookups else 0.0,
        }
