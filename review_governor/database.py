"""
Database engine and session management (SQLAlchemy 2.0 async).

The durable cache tier is the only database user. Engines are built per
DurableStore instance rather than held in module globals so that every test
and every process owns an explicit lifecycle.

Design decisions:
- SQLite (aiosqlite) is the default: a single local file that survives
  process restarts is all the durable tier needs
- In-memory SQLite uses StaticPool so every session sees the same database
- Any other async URL (e.g. postgresql+asyncpg) gets a small pooled engine
- All models import Base from here to keep metadata centralized
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    type_annotation_map: dict[Any, Any] = {}


def is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def is_memory_sqlite_url(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the durable tier."""
    kwargs: dict[str, Any] = {"echo": echo}
    if is_memory_sqlite_url(database_url):
        # One shared connection, otherwise each session gets an empty database
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif not is_sqlite_url(database_url):
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,
            }
        )
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Avoid lazy-load issues after commit
        autoflush=True,
    )
