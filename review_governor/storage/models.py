"""ORM models for the durable cache tier.

Three tables, stable across process restarts:

- ``reviews``: one row per application, the full imported review collection
- ``metadata``: denormalised summary of the same review set, cheap to read
  for existence and freshness checks
- ``analysis``: arbitrary analysis payloads keyed by an opaque cache key,
  owned by an application so they can be evicted in bulk

A ``reviews`` row is always written together with its ``metadata`` row in
one transaction.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from review_governor.database import Base

SCHEMA_VERSION = "1.0"


class ReviewSetRecord(Base):
    """Raw review collection imported for one application."""

    __tablename__ = "reviews"

    app_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    territory: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reviews: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<ReviewSetRecord app_id={self.app_id!r} territory={self.territory!r} "
            f"count={self.review_count}>"
        )


class ReviewSetMetadataRecord(Base):
    """Summary of a stored review set."""

    __tablename__ = "metadata"

    app_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    territory: Mapped[str] = mapped_column(String(64), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    oldest_review: Mapped[str | None] = mapped_column(String(64), nullable=True)
    newest_review: Mapped[str | None] = mapped_column(String(64), nullable=True)
    schema_version: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SCHEMA_VERSION,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_id": self.app_id,
            "territory": self.territory,
            "last_updated": as_utc(self.last_updated).isoformat(),
            "review_count": self.review_count,
            "oldest_review": self.oldest_review,
            "newest_review": self.newest_review,
            "schema_version": self.schema_version,
        }


class AnalysisRecord(Base):
    """Cached analysis payload."""

    __tablename__ = "analysis"

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    app_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AnalysisRecord key={self.key!r} app_id={self.app_id!r}>"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to datetimes SQLite hands back without tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
