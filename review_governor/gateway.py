"""Cached, governed upstream calls.

The canonical call path for anything expensive and rate-limited:

    1. look the result up in the tiered cache
    2. on a miss, submit the call to the request governor and wait
    3. write the result back to the cache

Errors from the governor (throttling exhausted, timeouts, upstream
failures) reach the caller untouched and nothing is cached for them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from review_governor.cache.tiered import TieredCache
from review_governor.governor.governor import RequestGovernor

log = structlog.get_logger(__name__)

T = TypeVar("T")


class AnalysisGateway:
    """Cache-first front door to the governed upstream."""

    def __init__(self, cache: TieredCache, governor: RequestGovernor) -> None:
        self._cache = cache
        self._governor = governor

    async def run(
        self,
        key: str,
        task: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
        app_id: str | None = None,
    ) -> T:
        """Return the cached result for ``key`` or compute it through the governor."""
        cached: Any = await self._cache.get(key)
        if cached is not None:
            log.debug("gateway.cache_hit", key=key)
            return cached

        log.debug("gateway.cache_miss", key=key)
        result = await self._governor.submit(task)
        if result is not None:
            outcome = await self._cache.set(key, result, ttl, app_id=app_id)
            log.debug("gateway.result_cached", key=key, outcome=outcome.value)
        return result
