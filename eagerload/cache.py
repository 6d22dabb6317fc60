"""
Result caches keyed by ``(entity_type, key)``.

Two modes exist:

- ``ScopedResultCache``: a plain dict owned by one engine scope and cleared
  when the scope closes.
- ``SharedTTLCache``: outlives scopes and is shared between them; entries
  expire lazily on read and writes are last-writer-wins. An optional
  ``max_entries`` bound evicts the least recently used entry.

Both store values and errors alike in a ``CacheEntry``.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from .config import CacheSettings
from .logging import get_logger

CacheKey = Tuple[str, Hashable]


@dataclass(frozen=True)
class CacheEntry:
    """Resolved outcome of one key."""

    value: Any = None
    error: Optional[BaseException] = None
    inserted_at: float = 0.0
    ttl: Optional[float] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def is_expired(self, now: float) -> bool:
        if self.ttl is None:
            return False
        return now - self.inserted_at >= self.ttl

    def unwrap(self) -> Any:
        """Return the value or raise the cached error."""
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    writes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class ResultCache:
    """Interface shared by both cache modes."""

    shared = False

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.stats = CacheStats()

    def get(self, entity_type: str, key: Hashable) -> Optional[CacheEntry]:
        raise NotImplementedError

    def set(self, entity_type: str, key: Hashable, entry: CacheEntry) -> None:
        raise NotImplementedError

    def set_if_absent(self, entity_type: str, key: Hashable, entry: CacheEntry) -> bool:
        raise NotImplementedError

    def delete(self, entity_type: str, key: Hashable) -> bool:
        raise NotImplementedError

    def clear(self, entity_type: Optional[str] = None) -> int:
        raise NotImplementedError

    def on_scope_close(self) -> None:
        """Hook invoked by the engine when its scope closes."""

    def __len__(self) -> int:
        raise NotImplementedError

    def make_value(self, value: Any) -> CacheEntry:
        return CacheEntry(value=value, inserted_at=self._clock())

    def make_error(self, error: BaseException) -> CacheEntry:
        return CacheEntry(error=error, inserted_at=self._clock())


class ScopedResultCache(ResultCache):
    """Scope-local cache; entries never expire and are dropped at scope close."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        super().__init__(clock)
        self._entries: Dict[CacheKey, CacheEntry] = {}

    def get(self, entity_type: str, key: Hashable) -> Optional[CacheEntry]:
        entry = self._entries.get((entity_type, key))
        if entry is None:
            self.stats.misses += 1
        else:
            self.stats.hits += 1
        return entry

    def set(self, entity_type: str, key: Hashable, entry: CacheEntry) -> None:
        self._entries[(entity_type, key)] = entry
        self.stats.writes += 1

    def set_if_absent(self, entity_type: str, key: Hashable, entry: CacheEntry) -> bool:
        if (entity_type, key) in self._entries:
            return False
        self.set(entity_type, key, entry)
        return True

    def delete(self, entity_type: str, key: Hashable) -> bool:
        return self._entries.pop((entity_type, key), None) is not None

    def clear(self, entity_type: Optional[str] = None) -> int:
        if entity_type is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        doomed = [k for k in self._entries if k[0] == entity_type]
        for k in doomed:
            del self._entries[k]
        return len(doomed)

    def on_scope_close(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SharedTTLCache(ResultCache):
    """TTL cache shared across scopes (and threads running their own loops)."""

    shared = True

    def __init__(self,
                 ttl: float,
                 error_ttl: Optional[float] = None,
                 max_entries: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(clock)
        self.ttl = ttl
        self.error_ttl = error_ttl if error_ttl is not None else ttl
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.logger = get_logger("eagerload.cache")

    def make_value(self, value: Any) -> CacheEntry:
        return CacheEntry(value=value, inserted_at=self._clock(), ttl=self.ttl)

    def make_error(self, error: BaseException) -> CacheEntry:
        return CacheEntry(error=error, inserted_at=self._clock(), ttl=self.error_ttl)

    def get(self, entity_type: str, key: Hashable) -> Optional[CacheEntry]:
        cache_key = (entity_type, key)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                self.stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[cache_key]
                self.stats.misses += 1
                self.stats.expirations += 1
                return None

            self._entries.move_to_end(cache_key)
            self.stats.hits += 1
            return entry

    def set(self, entity_type: str, key: Hashable, entry: CacheEntry) -> None:
        cache_key = (entity_type, key)
        with self._lock:
            self._entries[cache_key] = entry
            self._entries.move_to_end(cache_key)
            self.stats.writes += 1
            self._evict_overflow()

    def set_if_absent(self, entity_type: str, key: Hashable, entry: CacheEntry) -> bool:
        cache_key = (entity_type, key)
        with self._lock:
            current = self._entries.get(cache_key)
            if current is not None and not current.is_expired(self._clock()):
                return False
            self.set(entity_type, key, entry)
            return True

    def delete(self, entity_type: str, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop((entity_type, key), None) is not None

    def clear(self, entity_type: Optional[str] = None) -> int:
        with self._lock:
            if entity_type is None:
                count = len(self._entries)
                self._entries.clear()
                return count
            doomed = [k for k in self._entries if k[0] == entity_type]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                del self._entries[k]
            self.stats.expirations += len(doomed)
        return len(doomed)

    def _evict_overflow(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            self.logger.debug("Evicted cache entry", entity_type=evicted[0], key=repr(evicted[1]))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def create_cache(settings: CacheSettings, clock: Callable[[], float] = time.monotonic) -> ResultCache:
    """Build the cache selected by ``settings.mode``."""
    if settings.mode == "shared-ttl":
        return SharedTTLCache(
            ttl=settings.ttl_ms / 1000.0,
            error_ttl=settings.error_ttl_ms / 1000.0 if settings.error_ttl_ms else None,
            max_entries=settings.max_entries,
            clock=clock,
        )
    return ScopedResultCache(clock=clock)
