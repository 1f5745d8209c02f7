"""Thread-safe TTL cache with single-key invalidation.

Used for the price, limit and spend caches. Locks are striped by key hash so
loading or invalidating one key never blocks the whole cache, and each key
carries a generation counter so a load that raced an invalidation cannot write
its (now stale) result back.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_STRIPES = 16


@dataclass
class CacheEntry(Generic[V]):
    """A cached value and the monotonic time it stops being fresh."""

    value: V
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class CacheStats:
    """Lookup counters for observability."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    loads: int = 0
    invalidations: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "loads": self.loads,
            "invalidations": self.invalidations,
        }


class TTLCache(Generic[K, V]):
    """Per-key TTL cache.

    ``get_or_load`` treats an expired entry as a miss and reloads synchronously.
    ``peek`` returns expired entries too, for callers that serve stale values
    while refreshing elsewhere (see ``PricingResolver``).
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        stripes: int = DEFAULT_STRIPES,
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: How long a stored value stays fresh.
            clock: Monotonic time source (overridable in tests).
            stripes: Number of lock stripes.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._generations: Dict[K, int] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, stripes))]
        self._stats_lock = threading.Lock()
        self.stats = CacheStats()

    def _lock_for(self, key: K) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _count(self, field_name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, field_name, getattr(self.stats, field_name) + 1)

    def now(self) -> float:
        return self._clock()

    def generation(self, key: K) -> int:
        """Current generation of ``key``; bumped by every invalidation."""
        return self._generations.get(key, 0)

    def peek(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the entry for ``key`` whether fresh or stale, or None."""
        entry = self._entries.get(key)
        if entry is None:
            self._count("misses")
        elif entry.is_fresh(self._clock()):
            self._count("hits")
        else:
            self._count("stale_hits")
        return entry

    def get(self, key: K, default: Any = None) -> Any:
        """Return the fresh value for ``key`` or ``default``."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._count("hits")
            return entry.value
        self._count("misses")
        return default

    def put(
        self,
        key: K,
        value: V,
        generation: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Store ``value`` under ``key``.

        Args:
            key: Cache key
            value: Value to store
            generation: If given, only store when the key has not been
                invalidated since this generation was read.
            ttl_seconds: Freshness for this entry only; 0 stores it already
                stale. Defaults to the cache TTL.

        Returns:
            True if the value was stored.
        """
        with self._lock_for(key):
            if generation is not None and self._generations.get(key, 0) != generation:
                return False
            ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
            self._entries[key] = CacheEntry(value, self._clock() + ttl)
            return True

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """Return the fresh value for ``key``, loading it on a miss.

        The loader runs outside the stripe lock. A load that overlaps an
        invalidation of the same key returns its value but does not cache it.
        Exceptions from ``loader`` propagate and nothing is cached.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._count("hits")
            return entry.value

        self._count("misses")
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                return entry.value
            generation = self._generations.get(key, 0)

        value = loader()
        self._count("loads")
        self.put(key, value, generation=generation)
        return value

    def invalidate(self, key: K) -> bool:
        """Drop ``key`` and reject in-flight loads of it.

        Returns:
            True if an entry was present.
        """
        with self._lock_for(key):
            self._generations[key] = self._generations.get(key, 0) + 1
            removed = self._entries.pop(key, None) is not None
        self._count("invalidations")
        return removed

    def clear(self) -> None:
        """Drop every entry."""
        for key in list(self._entries):
            self.invalidate(key)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.is_fresh(self._clock())

    def __len__(self) -> int:
        return len(self._entries)
