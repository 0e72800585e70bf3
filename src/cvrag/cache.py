"""Time-boxed storage for adapter responses keyed by ``(source, subject_id)``."""
from __future__ import annotations

import logging
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Protocol, Tuple

from cachetools import TLRUCache

LOGGER = logging.getLogger(__name__)

CacheKey = Tuple[str, str]
DEFAULT_MAX_ENTRIES = 4096


@dataclass(frozen=True, slots=True)
class CacheEntry:
    value: Any
    ttl: float


def _time_to_use(key: CacheKey, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


class CacheStore(Protocol):
    """CRUD contract the orchestrator depends on."""

    def get(self, key: CacheKey) -> Tuple[Optional[Any], bool]:
        ...

    def put(self, key: CacheKey, value: Any, ttl: float) -> None:
        ...

    def invalidate(self, key: CacheKey) -> bool:
        ...


class KeyedLocks:
    """Hand out one lock per key so unrelated keys never contend.

    Locks are held weakly: a key's lock disappears once nobody holds it, so
    deleted entries and namespaces leave nothing behind.
    """

    def __init__(self, factory: Callable[[], Any] = threading.Lock) -> None:
        self._factory = factory
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[Any, Any]" = weakref.WeakValueDictionary()

    def lock(self, key: Any) -> Any:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._factory()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


class InMemoryCacheStore:
    """Process-local cache; a cold cache only costs latency.

    Each entry expires after its own TTL; the least recently used entries are
    evicted once ``max_entries`` is reached.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TLRUCache = TLRUCache(maxsize=max_entries, ttu=_time_to_use, timer=clock)
        self._guard = threading.Lock()
        self._locks = KeyedLocks()
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> Tuple[Optional[Any], bool]:
        with self._locks.lock(key):
            with self._guard:
                entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None, False
            self.hits += 1
            return entry.value, True

    def put(self, key: CacheKey, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._locks.lock(key):
            with self._guard:
                self._entries[key] = CacheEntry(value=value, ttl=float(ttl))

    def invalidate(self, key: CacheKey) -> bool:
        with self._locks.lock(key):
            with self._guard:
                return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        with self._guard:
            expired = self._entries.expire()
        if expired:
            LOGGER.debug("Purged %s expired cache entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __iter__(self) -> Iterator[CacheKey]:
        with self._guard:
            self._entries.expire()
            return iter(list(self._entries))


__all__ = ["CacheEntry", "CacheKey", "CacheStore", "InMemoryCacheStore", "KeyedLocks"]
