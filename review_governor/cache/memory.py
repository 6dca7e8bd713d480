"""In-process memory tier.

A dict-backed key/value store with per-entry expiry. Authoritative for
recently used data and free of I/O, so every method is synchronous: each
call is a single dict operation and no other coroutine can observe a
partial update.

Expired entries are purged lazily on access (get/has) and eagerly by
clear_expired(), which the janitor calls periodically and get_stats() calls
before reporting.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class _CacheEntry:
    """Single entry stored by MemoryCache."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class MemoryCache:
    """Key/value cache with TTL support.

    ``None`` is the miss marker returned by get(); any other value,
    including falsy ones such as ``0`` or ``[]``, round-trips unchanged.

    Args:
        default_ttl: TTL in seconds used when set() is called without one
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: dict[str, _CacheEntry] = {}
        self._hits: int = 0
        self._misses: int = 0

    def __len__(self) -> int:
        return len(self._store)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store value under key, replacing any existing entry.

        Raises:
            ValueError: value is None, which get() could not tell from a miss
        """
        if value is None:
            raise ValueError(f"Cannot cache None under {key!r}")
        effective_ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = _CacheEntry(value, self._clock() + effective_ttl)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        """Return True if key is present and has not expired."""
        return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if an entry was removed."""
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        self._store.clear()
        self._hits = 0
        self._misses = 0
        log.debug("cache.memory.cleared")

    def clear_expired(self) -> int:
        """Delete every expired entry and return how many were removed."""
        now = self._clock()
        expired = [k for k, entry in self._store.items() if entry.is_expired(now)]
        for key in expired:
            del self._store[key]
        if expired:
            log.debug("cache.memory.expired_swept", removed=len(expired))
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        """Diagnostics snapshot. Purges expired entries first."""
        self.clear_expired()
        now = self._clock()
        return {
            "size": len(self._store),
            "hits": self._hits,
            "misses": self._misses,
            "entries": [
                {"key": key, "expires_in": max(0.0, entry.expires_at - now)}
                for key, entry in self._store.items()
            ],
        }

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._store[key]
            return None
        return entry
