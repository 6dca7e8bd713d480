"""Durable cache tier.

Persists imported review sets, their metadata and analysis results in a
local database so they survive process restarts. It is the second-chance
tier behind the memory cache and the archive for bulk review imports.

Failure semantics:
- init() raises DurableUnavailableError when the database cannot be opened;
  the tiered cache then runs memory-only for the rest of the process
- every other operation wraps database errors in DurableStoreError; callers
  treat that as a miss (reads) or a no-op (writes)
- calling any operation before init() is a programmer error (RuntimeError)
- cleanup_old_data() and get_storage_info() are maintenance calls and never
  raise for database trouble; they report it in their result instead
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from review_governor.database import (
    Base,
    build_engine,
    build_session_factory,
    is_memory_sqlite_url,
    is_sqlite_url,
)
from review_governor.storage.models import (
    SCHEMA_VERSION,
    AnalysisRecord,
    ReviewSetMetadataRecord,
    ReviewSetRecord,
    as_utc,
)

log = structlog.get_logger(__name__)

DEFAULT_TERRITORY = "USA"


class DurableStoreError(Exception):
    """A durable tier operation failed."""


class DurableUnavailableError(DurableStoreError):
    """The durable tier could not be initialised."""


@dataclass
class StoredReviews:
    """A review set read back from the durable tier."""

    app_id: str
    territory: str
    reviews: list[dict[str, Any]]
    last_updated: datetime
    review_count: int
    from_cache: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "reviews": self.reviews,
            "metadata": {
                "last_updated": self.last_updated.isoformat(),
                "review_count": self.review_count,
                "from_cache": self.from_cache,
            },
        }


@dataclass
class CleanupResult:
    reviews_removed: int = 0
    analysis_removed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StorageInfo:
    usage: int = 0
    quota: int = 0
    percentage: float = 0.0
    supported: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _review_date(review: Mapping[str, Any]) -> str | None:
    value = review.get("Date", review.get("date"))
    return None if value is None else str(value)


class DurableStore:
    """Async key/record store over SQLAlchemy.

    Args:
        database_url: Async SQLAlchemy URL (default deployment uses
            ``sqlite+aiosqlite:///path/to/file.db``)
        echo: Log emitted SQL
        clock: Returns the current UTC datetime, injectable for tests
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._database_url = database_url
        self._echo = echo
        self._clock = clock
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._init_task: asyncio.Task[None] | None = None

    @property
    def initialized(self) -> bool:
        return self._session_factory is not None

    @property
    def database_url(self) -> str:
        return self._database_url

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and create the three tables on first run.

        Idempotent. Concurrent callers all await the same initialisation.
        """
        if self._session_factory is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except DurableUnavailableError:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        safe_url = self._database_url.split("@")[-1]
        try:
            engine = build_engine(self._database_url, echo=self._echo)
        except Exception as exc:
            log.warning("durable.init_failed", url=safe_url, error=str(exc))
            raise DurableUnavailableError(f"Cannot create engine for {safe_url}: {exc}") from exc

        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except Exception as exc:
            await engine.dispose()
            log.warning("durable.init_failed", url=safe_url, error=str(exc))
            raise DurableUnavailableError(f"Cannot open durable store {safe_url}: {exc}") from exc

        self._engine = engine
        self._session_factory = build_session_factory(engine)
        log.info("durable.initialized", url=safe_url)

    async def close(self) -> None:
        """Dispose the engine and release all connections."""
        if self._engine is not None:
            await self._engine.dispose()
            log.info("durable.closed")
        self._engine = None
        self._session_factory = None
        self._init_task = None

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Durable store not initialized. Call init() first.")
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            log.warning("durable.operation_failed", operation=operation, error=str(exc))
            raise DurableStoreError(f"Durable {operation} failed: {exc}") from exc

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Review sets
    # ------------------------------------------------------------------

    async def store_reviews(
        self,
        app_id: str,
        reviews: Sequence[Mapping[str, Any]],
        territory: str = DEFAULT_TERRITORY,
    ) -> dict[str, Any]:
        """Write a review set and its metadata in one transaction.

        Reviews are expected newest first, so the last element carries the
        oldest date.

        Returns:
            The metadata row as a dict.
        """
        now = self._now()
        payload = [dict(review) for review in reviews]
        metadata = ReviewSetMetadataRecord(
            app_id=app_id,
            territory=territory,
            last_updated=now,
            review_count=len(payload),
            oldest_review=_review_date(payload[-1]) if payload else None,
            newest_review=_review_date(payload[0]) if payload else None,
            schema_version=SCHEMA_VERSION,
        )
        async with self._transaction("store_reviews") as session:
            await session.merge(
                ReviewSetRecord(
                    app_id=app_id,
                    territory=territory,
                    reviews=payload,
                    last_updated=now,
                    review_count=len(payload),
                )
            )
            await session.merge(metadata)

        log.debug("durable.reviews_stored", app_id=app_id, territory=territory, count=len(payload))
        return metadata.to_dict()

    async def get_reviews(
        self,
        app_id: str,
        territory: str = DEFAULT_TERRITORY,
    ) -> StoredReviews | None:
        """Return the stored review set, or None if absent or for another territory."""
        async with self._transaction("get_reviews") as session:
            record = await session.get(ReviewSetRecord, app_id)
            if record is None or record.territory != territory:
                return None
            return StoredReviews(
                app_id=record.app_id,
                territory=record.territory,
                reviews=list(record.reviews),
                last_updated=as_utc(record.last_updated),
                review_count=record.review_count,
            )

    async def get_metadata(self, app_id: str) -> dict[str, Any] | None:
        async with self._transaction("get_metadata") as session:
            record = await session.get(ReviewSetMetadataRecord, app_id)
            return record.to_dict() if record is not None else None

    async def list_cached_apps(self) -> list[dict[str, Any]]:
        """Summaries of every stored review set, most recently updated first."""
        async with self._transaction("list_cached_apps") as session:
            result = await session.scalars(
                select(ReviewSetMetadataRecord).order_by(
                    ReviewSetMetadataRecord.last_updated.desc()
                )
            )
            return [
                {
                    "app_id": meta.app_id,
                    "territory": meta.territory,
                    "last_updated": as_utc(meta.last_updated).isoformat(),
                    "review_count": meta.review_count,
                }
                for meta in result
            ]

    # ------------------------------------------------------------------
    # Analysis results
    # ------------------------------------------------------------------

    async def store_analysis(self, key: str, data: Any, app_id: str | None = None) -> None:
        async with self._transaction("store_analysis") as session:
            await session.merge(
                AnalysisRecord(key=key, app_id=app_id, data=data, created_at=self._now())
            )

    async def get_analysis(self, key: str) -> Any | None:
        """Return the stored payload, or None when the key is unknown."""
        async with self._transaction("get_analysis") as session:
            record = await session.get(AnalysisRecord, key)
            return record.data if record is not None else None

    async def delete_analysis(self, key: str) -> bool:
        async with self._transaction("delete_analysis") as session:
            result = await session.execute(delete(AnalysisRecord).where(AnalysisRecord.key == key))
            removed = bool(result.rowcount)
        return removed

    # ------------------------------------------------------------------
    # Eviction and maintenance
    # ------------------------------------------------------------------

    async def clear_app_data(self, app_id: str) -> dict[str, int]:
        """Delete the review set, its metadata and every analysis owned by app_id."""
        async with self._transaction("clear_app_data") as session:
            reviews = await session.execute(
                delete(ReviewSetRecord).where(ReviewSetRecord.app_id == app_id)
            )
            metadata = await session.execute(
                delete(ReviewSetMetadataRecord).where(ReviewSetMetadataRecord.app_id == app_id)
            )
            analysis = await session.execute(
                delete(AnalysisRecord).where(AnalysisRecord.app_id == app_id)
            )
            removed = {
                "reviews": reviews.rowcount,
                "metadata": metadata.rowcount,
                "analysis": analysis.rowcount,
            }

        log.info("durable.app_cleared", app_id=app_id, **removed)
        return removed

    async def clear_all(self) -> None:
        async with self._transaction("clear_all") as session:
            await session.execute(delete(AnalysisRecord))
            await session.execute(delete(ReviewSetMetadataRecord))
            await session.execute(delete(ReviewSetRecord))
        log.info("durable.cleared_all")

    async def cleanup_old_data(self, days_to_keep: int = 30) -> CleanupResult:
        """Delete review sets and analyses older than ``days_to_keep`` days.

        Metadata rows of removed review sets go with them.
        """
        cutoff = self._now() - timedelta(days=days_to_keep)
        try:
            async with self._transaction("cleanup_old_data") as session:
                stale_ids = list(
                    await session.scalars(
                        select(ReviewSetRecord.app_id).where(ReviewSetRecord.last_updated < cutoff)
                    )
                )
                if stale_ids:
                    await session.execute(
                        delete(ReviewSetRecord).where(ReviewSetRecord.app_id.in_(stale_ids))
                    )
                    await session.execute(
                        delete(ReviewSetMetadataRecord).where(
                            ReviewSetMetadataRecord.app_id.in_(stale_ids)
                        )
                    )
                analysis = await session.execute(
                    delete(AnalysisRecord).where(AnalysisRecord.created_at < cutoff)
                )
                result = CleanupResult(
                    reviews_removed=len(stale_ids),
                    analysis_removed=analysis.rowcount,
                )
        except DurableStoreError as exc:
            return CleanupResult(error=str(exc))

        log.info(
            "durable.cleanup_completed",
            days_to_keep=days_to_keep,
            reviews_removed=result.reviews_removed,
            analysis_removed=result.analysis_removed,
        )
        return result

    async def get_storage_info(self) -> StorageInfo:
        """Best-effort disk usage estimate for file-backed SQLite."""
        if not is_sqlite_url(self._database_url) or is_memory_sqlite_url(self._database_url):
            return StorageInfo(supported=False, error="Storage estimate not supported")

        path = Path(make_url(self._database_url).database or "")
        try:
            usage = sum(
                candidate.stat().st_size
                for candidate in (path, path.with_name(path.name + "-wal"))
                if candidate.exists()
            )
            disk = shutil.disk_usage(path.parent)
        except OSError as exc:
            return StorageInfo(supported=False, error=str(exc))

        quota = usage + disk.free
        return StorageInfo(
            usage=usage,
            quota=quota,
            percentage=(usage / quota * 100) if quota else 0.0,
        )
