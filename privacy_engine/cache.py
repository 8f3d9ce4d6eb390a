"""
Privacy Engine - Caches.

============================================================
PURPOSE
============================================================
Bounded, TTL-aware, thread-safe caches owned by engine
components (derived keys, anonymization tokens, aggregation
snapshots). Caches are pure performance layers: a hit must
return exactly what a cold computation would.

Entry lifecycle:

    MISS -> COMPUTING -> CACHED -> (ttl elapsed) -> MISS

============================================================
CONCURRENCY
============================================================

- Reads and writes are guarded by one lock per cache.
- ``get_or_compute`` holds a per-key lock while computing, so
  concurrent misses for the same key compute once.
- ``AsyncSingleFlight`` coalesces concurrent coroutine misses
  onto one in-flight task (one event loop per instance).

TTL bookkeeping uses the monotonic clock only.

============================================================
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from core.clock import ClockFactory, ClockProtocol


logger = logging.getLogger(__name__)

V = TypeVar("V")

_MISSING = object()


# ============================================================
# ENTRY STATE
# ============================================================

class EntryState(Enum):
    """State of a key in a cache."""
    MISS = "miss"
    COMPUTING = "computing"
    CACHED = "cached"


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """
    Cached value with its creation time and TTL.

    Entries are replaced, never mutated in place.
    """
    key: Hashable
    value: V
    created_at: float
    ttl: Optional[float] = None

    def is_fresh(self, now: float) -> bool:
        if self.ttl is None:
            return True
        return (now - self.created_at) < self.ttl


# ============================================================
# TTL CACHE
# ============================================================

class TTLCache(Generic[V]):
    """
    Thread-safe LRU cache with optional per-entry TTL.

    Usage:
        cache = TTLCache(max_size=1000, default_ttl=60.0, name="keys")
        value = cache.get_or_compute(key, lambda: expensive(key))
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: Optional[float] = None,
        clock: Optional[ClockProtocol] = None,
        name: str = "cache",
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if default_ttl is not None and default_ttl <= 0:
            raise ValueError("default_ttl must be positive")

        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock or ClockFactory.get_clock()
        self._name = name

        self._entries: "OrderedDict[Hashable, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.RLock()
        self._key_locks: Dict[Hashable, threading.Lock] = {}

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._computations = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_size(self) -> int:
        return self._max_size

    # =========================================================
    # READ / WRITE
    # =========================================================

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on miss or expiry."""
        value = self._lookup(key)
        if value is _MISSING:
            return default
        return value

    def _lookup(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return _MISSING

            if not entry.is_fresh(self._clock.monotonic()):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return _MISSING

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        """Store ``value``; evicts the least recently used entry when full."""
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock.monotonic(),
            ttl=ttl if ttl is not None else self._default_ttl,
        )
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = entry
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
                self._evictions += 1

    def get_or_compute(
        self,
        key: Hashable,
        factory: Callable[[], V],
        ttl: Optional[float] = None,
    ) -> V:
        """
        Return the cached value or compute, store and return it.

        Only one thread computes a given key at a time; the others
        wait on the key lock and then read the stored value.
        Exceptions from ``factory`` propagate and nothing is stored.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value

        key_lock = self._get_key_lock(key)
        with key_lock:
            # Another thread may have populated the key while we waited
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None and entry.is_fresh(self._clock.monotonic()):
                    self._entries.move_to_end(key)
                    return entry.value

            try:
                value = factory()
                self._computations += 1
                self.set(key, value, ttl)
                return value
            finally:
                with self._lock:
                    if self._key_locks.get(key) is key_lock:
                        del self._key_locks[key]

    def _get_key_lock(self, key: Hashable) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def state(self, key: Hashable) -> EntryState:
        """Report the lifecycle state of ``key`` without touching LRU order."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock.monotonic()):
                return EntryState.CACHED
            lock = self._key_locks.get(key)
            if lock is not None and lock.locked():
                return EntryState.COMPUTING
            return EntryState.MISS

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug(f"Cache cleared: {self._name}")

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number dropped."""
        now = self._clock.monotonic()
        with self._lock:
            expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_fresh(self._clock.monotonic())

    # =========================================================
    # STATISTICS
    # =========================================================

    @property
    def hit_rate(self) -> float:
        with self._lock:
            lookups = self._hits + self._misses
            return (self._hits / lookups) * 100 if lookups else 0.0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self._name,
                "size": len(self._entries),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "computations": self._computations,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "hit_rate": round(self.hit_rate, 2),
            }


# ============================================================
# ASYNC SINGLE-FLIGHT
# ============================================================

class AsyncSingleFlight:
    """
    Coalesce concurrent coroutine calls for the same key.

    The first caller starts the computation as a task; later
    callers await the same task. A caller cancelled by its own
    timeout does not cancel the shared task.
    """

    def __init__(self) -> None:
        self._inflight: Dict[Hashable, "asyncio.Task[Any]"] = {}
        self._leaders = 0
        self._coalesced = 0

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[V]]) -> V:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._finish(k, t))
            self._leaders += 1
        else:
            self._coalesced += 1
        return await asyncio.shield(task)

    def _finish(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved even when every waiter gave up
        if not task.cancelled():
            task.exception()

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    def get_stats(self) -> Dict[str, int]:
        return {
            "in_flight": len(self._inflight),
            "leaders": self._leaders,
            "coalesced": self._coalesced,
        }
