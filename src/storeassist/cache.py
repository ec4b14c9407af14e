"""TTL cache shared by the embedding, search and response layers."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol

_MISSING = object()


class Cache(Protocol):
    """Key/value cache with per-entry TTL."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value or ``default``."""

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` for ``ttl`` seconds (forever when ``None``)."""

    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether it existed."""

    def clear(self, prefix: str = "") -> int:
        """Remove every key starting with ``prefix``; return count."""


class InMemoryCache:
    """Process-local cache. Expired entries are dropped lazily on read."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, max_entries: int = 50_000) -> None:
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            if len(self._entries) >= self._max_entries and key not in self._entries:
                self._evict()
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            if not prefix:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (_, exp) in self._entries.items() if exp is not None and exp <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            # oldest insertion first
            for key in list(self._entries)[: max(1, self._max_entries // 10)]:
                del self._entries[key]


class NamespacedCache:
    """View over a cache that prefixes every key with a namespace.

    Every :meth:`clear` bumps :attr:`generation`. A writer that read the
    generation before doing slow work passes it to :meth:`set`, and the write
    is dropped if the namespace was cleared in the meantime.
    """

    def __init__(self, cache: Cache, namespace: str, *, default_ttl: float | None = None) -> None:
        self._cache = cache
        self._prefix = f"{namespace}:"
        self.default_ttl = default_ttl
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def namespace(self) -> str:
        return self._prefix[:-1]

    def get(self, key: str, default: Any = None) -> Any:
        return self._cache.get(self._prefix + key, default)

    def set(self, key: str, value: Any, ttl: float | None = None, *, generation: int | None = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._cache.set(self._prefix + key, value, self.default_ttl if ttl is None else ttl)
        return True

    def delete(self, key: str) -> bool:
        return self._cache.delete(self._prefix + key)

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            self._generation += 1
            return self._cache.clear(self._prefix + prefix)


__all__ = ["Cache", "InMemoryCache", "NamespacedCache"]
