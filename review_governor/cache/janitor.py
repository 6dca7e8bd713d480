"""Periodic cache housekeeping.

One background task, two schedules:
- every ``sweep_interval`` seconds: drop expired memory entries
- every ``cleanup_interval`` seconds: age-based cleanup of the durable tier

Nothing here raises into the application. A failed pass is logged and the
next one runs on schedule.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from review_governor.cache.tiered import TieredCache
from review_governor.config import Settings
from review_governor.storage.durable import CleanupResult

log = structlog.get_logger(__name__)


class CacheJanitor:
    """Background sweeper for a TieredCache."""

    def __init__(
        self,
        cache: TieredCache,
        *,
        sweep_interval: float = 300.0,
        cleanup_interval: float = 86400.0,
        days_to_keep: int = 30,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._sweep_interval = sweep_interval
        self._cleanup_interval = cleanup_interval
        self._days_to_keep = days_to_keep
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._last_cleanup: float | None = None

    @classmethod
    def from_settings(cls, cache: TieredCache, settings: Settings, **overrides: Any) -> CacheJanitor:
        kwargs: dict[str, Any] = {
            "sweep_interval": settings.janitor_sweep_interval_seconds,
            "cleanup_interval": settings.janitor_cleanup_interval_seconds,
            "days_to_keep": settings.janitor_days_to_keep,
        }
        kwargs.update(overrides)
        return cls(cache, **kwargs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            log.warning("cache.janitor.already_running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        log.info(
            "cache.janitor.started",
            sweep_interval=self._sweep_interval,
            cleanup_interval=self._cleanup_interval,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        log.info("cache.janitor.stopped")

    def sweep(self) -> int:
        """Remove expired memory entries now. Returns how many were dropped."""
        removed = self._cache.clear_expired()
        if removed:
            log.debug("cache.janitor.swept", removed=removed)
        return removed

    async def cleanup(self) -> CleanupResult | None:
        """Run the durable age cleanup now. None when there is no durable tier."""
        durable = self._cache.durable
        if durable is None:
            return None
        result = await durable.cleanup_old_data(self._days_to_keep)
        if not result.ok:
            log.warning("cache.janitor.cleanup_failed", error=result.error)
        return result

    async def run_once(self) -> None:
        """One pass: sweep memory, then run the durable cleanup if it is due."""
        self.sweep()
        now = self._clock()
        if self._last_cleanup is None or now - self._last_cleanup >= self._cleanup_interval:
            self._last_cleanup = now
            await self.cleanup()

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._sweep_interval)
            try:
                await self.run_once()
            except Exception:
                log.exception("cache.janitor.pass_failed")
