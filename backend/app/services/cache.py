from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Optional

OVERSIZED_CACHE_ENTRIES = 1000
LOW_HIT_RATIO = 0.6

_MISSING = object()


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "hit_ratio": round(self.hit_ratio, 4),
        }


class TTLCache:
    """Expiring key/value cache. Expired entries are evicted when they are looked up."""

    def __init__(
        self,
        default_ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if ttl <= 0:
                self._entries.pop(key, None)
                return
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, size=len(self._entries))

    def tuning_hints(self) -> list[str]:
        snap = self.stats()
        hints: list[str] = []
        if snap.size > OVERSIZED_CACHE_ENTRIES:
            hints.append(
                f"cache holds {snap.size} entries; shorten the TTL to keep it under "
                f"{OVERSIZED_CACHE_ENTRIES}"
            )
        if snap.hits + snap.misses and snap.hit_ratio < LOW_HIT_RATIO:
            hints.append(
                f"cache hit ratio is {snap.hit_ratio:.0%}; lengthen the TTL if data allows it"
            )
        return hints
