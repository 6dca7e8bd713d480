"""Explicit wiring of every long-lived component.

Build one ServiceContainer at startup and hand its members to the code
that needs them. There are no module-level singletons: tests and tools
build their own container from their own Settings.

    async with await ServiceContainer.create(settings) as services:
        result = await services.gateway.run(key, call_upstream)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from review_governor.cache.analysis import AnalysisCache
from review_governor.cache.janitor import CacheJanitor
from review_governor.cache.memory import MemoryCache
from review_governor.cache.tiered import TieredCache
from review_governor.config import Settings, get_settings
from review_governor.gateway import AnalysisGateway
from review_governor.governor.governor import RequestGovernor
from review_governor.storage.durable import DurableStore

log = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    memory: MemoryCache
    durable: DurableStore | None
    cache: TieredCache
    analysis: AnalysisCache
    governor: RequestGovernor
    gateway: AnalysisGateway
    janitor: CacheJanitor

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        *,
        start_janitor: bool = True,
    ) -> ServiceContainer:
        """Construct and start all components.

        A durable tier that fails to open leaves the container running
        memory-only; it never fails startup.
        """
        settings = settings or get_settings()

        memory = MemoryCache(default_ttl=settings.cache_default_ttl_seconds)
        durable = (
            DurableStore(settings.durable_database_url, echo=settings.durable_echo_sql)
            if settings.durable_enabled
            else None
        )
        cache = TieredCache(memory, durable, promotion_ttl=settings.cache_promotion_ttl_seconds)
        await cache.start()

        governor = RequestGovernor.from_settings(settings)
        janitor = CacheJanitor.from_settings(cache, settings)
        if start_janitor:
            janitor.start()

        log.info(
            "services.started",
            environment=settings.environment,
            durable=cache.durable_status.value,
            db_url=settings.durable_database_url.split("@")[-1],
        )
        return cls(
            settings=settings,
            memory=memory,
            durable=durable,
            cache=cache,
            analysis=AnalysisCache(cache, settings),
            governor=governor,
            gateway=AnalysisGateway(cache, governor),
            janitor=janitor,
        )

    async def aclose(self) -> None:
        await self.janitor.stop()
        await self.governor.aclose()
        if self.durable is not None:
            await self.durable.close()
        log.info("services.stopped")

    async def __aenter__(self) -> ServiceContainer:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
