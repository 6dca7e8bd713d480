"""Domain cache for review analytics.

Thin, typed helpers over TieredCache so every call site uses the same key
builder and TTL for the same kind of result:

- review-set analysis      (30 min)
- insights                 (30 min)
- sentiment summary        (30 min, caller-supplied key wins)
- single-review category   (1 h)

Review imports are cached differently. The raw review set goes into memory
under ``reviews:{app}:{territory}`` and into the durable ``reviews`` table
via store_reviews(); its summary goes into memory under ``meta:{app}``.
Reads fall back to the durable tables when memory has nothing and promote
what they find.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog

from review_governor.cache import keys
from review_governor.cache.tiered import TieredCache, WriteOutcome
from review_governor.config import Settings
from review_governor.storage.durable import DurableStoreError

log = structlog.get_logger(__name__)

CACHE_VERSION = "1.0"
REVIEW_ID_FIELD = "Review ID"

Review = Mapping[str, Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _review_sort_key(review: Review) -> datetime:
    raw = review.get("Date", review.get("date"))
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=UTC)
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=UTC)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.min.replace(tzinfo=UTC)


class AnalysisCache:
    """Typed get/set pairs for every cached analysis kind.

    Args:
        cache: The tiered cache facade
        settings: Source of per-kind TTLs
        clock: Returns the current UTC datetime, used for sync timestamps
    """

    def __init__(
        self,
        cache: TieredCache,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cache = cache
        self._analysis_ttl = settings.cache_analysis_ttl_seconds
        self._categorization_ttl = settings.cache_categorization_ttl_seconds
        self._review_import_ttl = settings.cache_review_import_ttl_seconds
        self._metadata_ttl = settings.cache_app_metadata_ttl_seconds
        self._clock = clock

    @property
    def cache(self) -> TieredCache:
        return self._cache

    # ------------------------------------------------------------------
    # Analysis results
    # ------------------------------------------------------------------

    async def get_review_analysis(self, reviews: Sequence[Review]) -> Any | None:
        return await self._cache.get(keys.review_analysis_key(reviews))

    async def set_review_analysis(
        self,
        reviews: Sequence[Review],
        analysis: Any,
        *,
        app_id: str | None = None,
    ) -> WriteOutcome:
        return await self._cache.set(
            keys.review_analysis_key(reviews), analysis, self._analysis_ttl, app_id=app_id
        )

    async def get_insights(self, summary: Any) -> Any | None:
        return await self._cache.get(keys.insights_key(summary))

    async def set_insights(
        self,
        summary: Any,
        insights: Any,
        *,
        app_id: str | None = None,
    ) -> WriteOutcome:
        return await self._cache.set(
            keys.insights_key(summary), insights, self._analysis_ttl, app_id=app_id
        )

    async def get_categorized_review(self, content: str) -> Any | None:
        return await self._cache.get(keys.categorization_key(content))

    async def set_categorized_review(
        self,
        content: str,
        category: Any,
        *,
        app_id: str | None = None,
    ) -> WriteOutcome:
        return await self._cache.set(
            keys.categorization_key(content), category, self._categorization_ttl, app_id=app_id
        )

    async def get_sentiment_analysis(
        self,
        reviews: Sequence[Review] | None = None,
        *,
        key: str | None = None,
    ) -> Any | None:
        return await self._cache.get(keys.sentiment_analysis_key(reviews, key=key))

    async def set_sentiment_analysis(
        self,
        reviews: Sequence[Review] | None,
        analysis: Any,
        *,
        key: str | None = None,
        app_id: str | None = None,
    ) -> WriteOutcome:
        return await self._cache.set(
            keys.sentiment_analysis_key(reviews, key=key),
            analysis,
            self._analysis_ttl,
            app_id=app_id,
        )

    # ------------------------------------------------------------------
    # Review imports
    # ------------------------------------------------------------------

    async def get_app_metadata(self, app_id: str) -> dict[str, Any] | None:
        """Return the import summary for app_id from memory, then the durable tier."""
        memory = self._cache.memory
        metadata = memory.get(keys.app_metadata_key(app_id))
        if metadata is not None:
            return metadata

        durable = self._cache.durable
        if durable is None:
            return None
        try:
            stored = await durable.get_metadata(app_id)
        except DurableStoreError as exc:
            log.warning("cache.analysis.metadata_read_failed", app_id=app_id, error=str(exc))
            return None
        if stored is None:
            return None

        metadata = {
            **stored,
            "last_sync": stored["last_updated"],
            "cache_version": stored.get("schema_version", CACHE_VERSION),
        }
        memory.set(keys.app_metadata_key(app_id), metadata, self._metadata_ttl)
        self._cache.track(app_id, keys.app_metadata_key(app_id))
        return metadata

    async def set_app_metadata(self, app_id: str, metadata: Mapping[str, Any]) -> dict[str, Any]:
        stamped = {
            **metadata,
            "last_updated": self._clock().isoformat(),
            "cache_version": CACHE_VERSION,
        }
        self._cache.memory.set(keys.app_metadata_key(app_id), stamped, self._metadata_ttl)
        self._cache.track(app_id, keys.app_metadata_key(app_id))
        return stamped

    async def get_cached_reviews(
        self,
        app_id: str,
        territory: str = keys.DEFAULT_TERRITORY,
    ) -> dict[str, Any]:
        """Return ``{"reviews", "metadata", "from_cache"}`` for an imported app.

        ``reviews`` is an empty list on a miss.
        """
        memory = self._cache.memory
        review_key = keys.review_import_key(app_id, territory)
        reviews = memory.get(review_key)

        if reviews is None:
            reviews = await self._load_archived_reviews(app_id, territory)
            if reviews is not None:
                memory.set(review_key, reviews, self._review_import_ttl)
                self._cache.track(app_id, review_key)

        metadata = await self.get_app_metadata(app_id)
        from_cache = reviews is not None
        log.debug(
            "cache.analysis.reviews_lookup",
            app_id=app_id,
            territory=territory,
            hit=from_cache,
        )
        return {
            "reviews": reviews if reviews is not None else [],
            "metadata": metadata,
            "from_cache": from_cache,
        }

    async def set_cached_reviews(
        self,
        app_id: str,
        reviews: Sequence[Review],
        territory: str = keys.DEFAULT_TERRITORY,
    ) -> dict[str, Any]:
        """Cache an imported review set (newest first) and return its metadata."""
        payload = [dict(review) for review in reviews]
        review_key = keys.review_import_key(app_id, territory)
        self._cache.memory.set(review_key, payload, self._review_import_ttl)
        self._cache.track(app_id, review_key)

        metadata = await self.set_app_metadata(
            app_id,
            {
                "app_id": app_id,
                "territory": territory,
                "review_count": len(payload),
                "last_sync": self._clock().isoformat(),
                "oldest_review": _date_of(payload[-1]) if payload else None,
                "newest_review": _date_of(payload[0]) if payload else None,
            },
        )

        durable = self._cache.durable
        if durable is not None:
            try:
                await durable.store_reviews(app_id, payload, territory)
            except DurableStoreError as exc:
                log.warning("cache.analysis.reviews_archive_failed", app_id=app_id, error=str(exc))

        log.info("cache.analysis.reviews_cached", app_id=app_id, territory=territory, count=len(payload))
        return metadata

    async def get_reviews_since_last_sync(
        self,
        app_id: str,
        current_reviews: Sequence[Review],
        territory: str = keys.DEFAULT_TERRITORY,
    ) -> dict[str, Any]:
        """Split ``current_reviews`` into new and already-cached reviews.

        Without a previous sync every current review is new. Otherwise the
        new ones are merged ahead of the cached set and the result is sorted
        newest first.
        """
        cached = await self.get_cached_reviews(app_id, territory)
        metadata = cached["metadata"]
        if not metadata or not metadata.get("last_sync"):
            return {
                "new_reviews": list(current_reviews),
                "existing_reviews": [],
                "all_reviews": list(current_reviews),
                "metadata": None,
                "new_review_count": len(current_reviews),
            }

        known_ids = {review.get(REVIEW_ID_FIELD) for review in cached["reviews"]}
        new_reviews = [
            review for review in current_reviews if review.get(REVIEW_ID_FIELD) not in known_ids
        ]
        all_reviews = sorted(
            [*new_reviews, *cached["reviews"]],
            key=_review_sort_key,
            reverse=True,
        )
        return {
            "new_reviews": new_reviews,
            "existing_reviews": cached["reviews"],
            "all_reviews": all_reviews,
            "metadata": metadata,
            "new_review_count": len(new_reviews),
        }

    async def clear_app(self, app_id: str) -> int:
        """Evict every cached artifact of app_id from both tiers."""
        return await self._cache.clear_app(app_id)

    async def _load_archived_reviews(self, app_id: str, territory: str) -> list[dict[str, Any]] | None:
        durable = self._cache.durable
        if durable is None:
            return None
        try:
            stored = await durable.get_reviews(app_id, territory)
        except DurableStoreError as exc:
            log.warning("cache.analysis.reviews_read_failed", app_id=app_id, error=str(exc))
            return None
        return stored.reviews if stored is not None else None


def _date_of(review: Review) -> str | None:
    value = review.get("Date", review.get("date"))
    return None if value is None else str(value)
