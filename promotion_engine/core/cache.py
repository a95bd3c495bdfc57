"""
In-process TTL cache.

Instances are injected into the components that read through them and
invalidated explicitly by the components that write the cached data.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe key/value cache with per-entry expiry.

    THREAD-SAFE: All operations hold an internal lock.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Lifetime of an entry. Zero disables caching.
            max_entries: Oldest entries are evicted beyond this size.
            clock: Monotonic time source, injectable for tests.
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, V]] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        """Return a live entry or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def generation(self, key: str) -> int:
        """Invalidation count for a key."""
        with self._lock:
            return self._generations.setdefault(key, 0)

    def set(self, key: str, value: V, generation: int | None = None) -> bool:
        """Store a value for the configured TTL.

        When generation is given the value is stored only if the key was not
        invalidated since that generation was read. Returns True if stored.
        """
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            if generation is not None and self._generations.get(key, 0) != generation:
                return False
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            while len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            return True

    def get_or_load(self, key: str, loader: Callable[[], V]) -> V:
        """Return the cached value or load, store and return it.

        A value loaded while the key was invalidated is returned but not stored.
        """
        value = self.get(key)
        if value is None:
            generation = self.generation(key)
            value = loader()
            self.set(key, value, generation=generation)
        return value

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it existed."""
        with self._lock:
            self._bump(key)
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        with self._lock:
            for key in [k for k in self._generations if k.startswith(prefix)]:
                self._bump(key)
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            for key in list(self._generations):
                self._bump(key)
            self._entries.clear()

    def _bump(self, key: str) -> None:
        # Caller holds the lock.
        self._generations[key] = self._generations.get(key, 0) + 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Hit/miss counters for diagnostics."""
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


def variants_cache_key(experiment_name: str) -> str:
    """Cache key for an experiment's variant list."""
    return f"variants:{experiment_name}"
