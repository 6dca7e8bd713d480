"""Tiered cache facade.

Coordinates the memory tier and the optional durable tier so callers never
need to know where a hit came from.

Read path:  memory -> durable (hit is promoted back into memory) -> miss
Write path: memory always, durable best-effort

The durable tier is initialised once in start(). If that fails the facade
runs memory-only for the rest of its lifetime and does not retry. Any
later durable failure is logged and treated as a miss or a skipped write;
nothing from the durable tier reaches the caller.

The facade keeps an index of which keys belong to which application so an
application's memory entries can be evicted together with its durable rows.
"""

from __future__ import annotations

from collections import defaultdict
from enum import StrEnum
from typing import Any

import structlog

from review_governor.cache.memory import MemoryCache
from review_governor.storage.durable import (
    DurableStore,
    DurableStoreError,
    DurableUnavailableError,
)

log = structlog.get_logger(__name__)


class WriteOutcome(StrEnum):
    """Which tiers a set() reached. Callers treat all three as success."""

    DURABLE = "durable"
    MEMORY_ONLY = "memory_only"
    DURABLE_FAILED = "durable_failed"


class TierStatus(StrEnum):
    PENDING = "pending"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"


class TieredCache:
    """Memory + durable cache facade.

    Args:
        memory: The in-process tier
        durable: Optional durable tier; None means memory-only by configuration
        promotion_ttl: TTL in seconds for durable hits copied into memory
    """

    def __init__(
        self,
        memory: MemoryCache,
        durable: DurableStore | None = None,
        *,
        promotion_ttl: float | None = None,
    ) -> None:
        self._memory = memory
        self._durable = durable
        self._promotion_ttl = promotion_ttl if promotion_ttl is not None else memory.default_ttl
        self._durable_status = TierStatus.PENDING if durable is not None else TierStatus.DISABLED
        self._app_index: dict[str, set[str]] = defaultdict(set)

    @property
    def memory(self) -> MemoryCache:
        return self._memory

    @property
    def durable(self) -> DurableStore | None:
        """The durable tier, only while it is healthy."""
        return self._durable if self.durable_available else None

    @property
    def durable_available(self) -> bool:
        return self._durable_status == TierStatus.AVAILABLE

    @property
    def durable_status(self) -> TierStatus:
        return self._durable_status

    async def start(self) -> bool:
        """Initialise the durable tier once. Returns True if it is usable."""
        if self._durable is None or self._durable_status != TierStatus.PENDING:
            return self.durable_available
        try:
            await self._durable.init()
        except DurableUnavailableError as exc:
            self._durable_status = TierStatus.UNAVAILABLE
            log.warning("cache.tiered.durable_unavailable", error=str(exc), mode="memory_only")
            return False
        self._durable_status = TierStatus.AVAILABLE
        log.info("cache.tiered.durable_available")
        return True

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on a miss in both tiers."""
        value = self._memory.get(key)
        if value is not None:
            log.debug("cache.tiered.hit", key=key, tier="memory")
            return value

        durable = self.durable
        if durable is None:
            log.debug("cache.tiered.miss", key=key)
            return None

        try:
            value = await durable.get_analysis(key)
        except DurableStoreError as exc:
            log.warning("cache.tiered.durable_read_failed", key=key, error=str(exc))
            return None

        if value is None:
            log.debug("cache.tiered.miss", key=key)
            return None

        self._memory.set(key, value, self._promotion_ttl)
        log.debug("cache.tiered.hit", key=key, tier="durable", promoted=True)
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        *,
        app_id: str | None = None,
    ) -> WriteOutcome:
        """Store value in memory and, when possible, in the durable tier.

        None is rejected with ValueError before either tier is touched.
        """
        self._memory.set(key, value, ttl)
        if app_id is not None:
            self.track(app_id, key)

        durable = self.durable
        if durable is None:
            return WriteOutcome.MEMORY_ONLY

        try:
            await durable.store_analysis(key, value, app_id)
        except DurableStoreError as exc:
            log.warning("cache.tiered.durable_write_failed", key=key, error=str(exc))
            return WriteOutcome.DURABLE_FAILED
        return WriteOutcome.DURABLE

    def track(self, app_id: str, key: str) -> None:
        """Attribute a memory key written outside set() to app_id."""
        self._app_index[app_id].add(key)

    def clear_expired(self) -> int:
        """Sweep expired memory entries and drop them from the app index.

        Returns the number of memory entries removed.
        """
        removed = self._memory.clear_expired()
        for app_id in list(self._app_index):
            live = {key for key in self._app_index[app_id] if self._memory.has(key)}
            if live:
                self._app_index[app_id] = live
            else:
                del self._app_index[app_id]
        return removed

    async def delete(self, key: str) -> None:
        self._memory.delete(key)
        for keys in self._app_index.values():
            keys.discard(key)
        durable = self.durable
        if durable is None:
            return
        try:
            await durable.delete_analysis(key)
        except DurableStoreError as exc:
            log.warning("cache.tiered.durable_delete_failed", key=key, error=str(exc))

    async def clear_app(self, app_id: str) -> int:
        """Evict everything cached for one application from both tiers.

        Returns the number of memory entries removed.
        """
        removed = sum(1 for key in self._app_index.pop(app_id, set()) if self._memory.delete(key))

        durable = self.durable
        if durable is not None:
            try:
                await durable.clear_app_data(app_id)
            except DurableStoreError as exc:
                log.warning("cache.tiered.durable_clear_failed", app_id=app_id, error=str(exc))

        log.info("cache.tiered.app_cleared", app_id=app_id, memory_removed=removed)
        return removed

    async def clear_all(self) -> None:
        self._memory.clear()
        self._app_index.clear()
        durable = self.durable
        if durable is None:
            return
        try:
            await durable.clear_all()
        except DurableStoreError as exc:
            log.warning("cache.tiered.durable_clear_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        """Diagnostics for both tiers."""
        result: dict[str, Any] = {
            "memory": self._memory.get_stats(),
            "durable": {"status": self._durable_status.value},
        }
        durable = self.durable
        if durable is not None:
            info = await durable.get_storage_info()
            result["durable"]["storage"] = info.to_dict()
        return result
