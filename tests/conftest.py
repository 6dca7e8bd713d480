"""
Shared test fixtures for pytest.

Provides common fakes for all test modules:
- fake_settings: Test environment configuration (in-memory durable tier)
- fake_clock: Manually advanced float clock with a recording async sleep
- utc_clock: Manually advanced datetime clock for the durable tier
- memory_store / file_store: Initialised DurableStore instances
- sample_reviews: Small review set shaped like an App Store export
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from review_governor.config import Environment, Settings, get_settings
from review_governor.storage.durable import DurableStore

MEMORY_DB_URL = "sqlite+aiosqlite:///:memory:"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Clocks
# ------------------------------------------------------------------ #

class FakeClock:
    """Float clock that only moves when told to.

    ``sleep`` records the requested delay, advances the clock by it and
    yields once to the event loop, so code under test observes time passing
    without the test actually waiting.
    """

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeUtcClock:
    """Datetime clock for the durable tier."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        durable_database_url=MEMORY_DB_URL,
        durable_echo_sql=False,
        governor_min_interval_seconds=1.0,
        governor_max_retries=3,
        governor_base_delay_seconds=1.0,
        governor_jitter_seconds=0.0,
        governor_task_timeout_seconds=None,
    )


# ------------------------------------------------------------------ #
# Durable stores
# ------------------------------------------------------------------ #

@pytest_asyncio.fixture
async def memory_store(utc_clock: FakeUtcClock) -> AsyncGenerator[DurableStore, None]:
    """Initialised in-memory SQLite store driven by utc_clock."""
    store = DurableStore(MEMORY_DB_URL, clock=utc_clock)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "review_cache.db"


@pytest_asyncio.fixture
async def file_store(db_path: Path, utc_clock: FakeUtcClock) -> AsyncGenerator[DurableStore, None]:
    """Initialised file-backed SQLite store."""
    store = DurableStore(f"sqlite+aiosqlite:///{db_path}", clock=utc_clock)
    await store.init()
    yield store
    await store.close()


# ------------------------------------------------------------------ #
# Sample data
# ------------------------------------------------------------------ #

@pytest.fixture
def sample_reviews() -> list[dict[str, Any]]:
    """Three reviews, newest first."""
    return [
        {
            "Review ID": "r3",
            "Date": "2026-01-14T09:00:00Z",
            "Rating": 5,
            "content": "Love the new dashboard",
        },
        {
            "Review ID": "r2",
            "Date": "2026-01-10T09:00:00Z",
            "Rating": 2,
            "content": "Crashes on launch",
        },
        {
            "Review ID": "r1",
            "Date": "2026-01-02T09:00:00Z",
            "Rating": 4,
            "content": "Solid but slow sync",
        },
    ]
