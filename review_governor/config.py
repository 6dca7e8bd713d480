"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
Every tunable of the governor, the cache tiers and the janitor lives here so
tests can build an isolated Settings instance per case.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    log_level: str = Field(default="INFO", description="Minimum log level")
    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON (always on in prod)",
    )

    # ------------------------------------------------------------------ #
    # Durable tier
    # ------------------------------------------------------------------ #
    durable_database_url: str = Field(
        default="sqlite+aiosqlite:///./review_cache.db",
        description="Async SQLAlchemy URL of the durable tier. Empty disables it.",
    )
    durable_echo_sql: bool = False

    # ------------------------------------------------------------------ #
    # Cache TTLs (seconds)
    # ------------------------------------------------------------------ #
    cache_default_ttl_seconds: int = Field(default=3600, gt=0)
    cache_analysis_ttl_seconds: int = Field(
        default=1800,
        gt=0,
        description="Review-set analysis, insights and sentiment summaries",
    )
    cache_categorization_ttl_seconds: int = Field(default=3600, gt=0)
    cache_review_import_ttl_seconds: int = Field(default=7200, gt=0)
    cache_app_metadata_ttl_seconds: int = Field(default=86400, gt=0)
    cache_promotion_ttl_seconds: int = Field(
        default=3600,
        gt=0,
        description="TTL given to durable hits copied back into memory",
    )

    # ------------------------------------------------------------------ #
    # Request governor
    # ------------------------------------------------------------------ #
    governor_min_interval_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum spacing between consecutive upstream dispatches",
    )
    governor_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts per task when the upstream keeps throttling",
    )
    governor_base_delay_seconds: float = Field(default=1.0, gt=0)
    governor_jitter_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Upper bound of uniform jitter added to exponential backoff",
    )
    governor_task_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-task timeout. None lets a hung task stall the queue.",
    )

    # ------------------------------------------------------------------ #
    # Janitor
    # ------------------------------------------------------------------ #
    janitor_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    janitor_cleanup_interval_seconds: float = Field(default=86400.0, gt=0)
    janitor_days_to_keep: int = Field(default=30, ge=1)

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _json_logs_in_prod(self) -> Settings:
        if self.environment == Environment.PROD:
            self.json_logs = True
        return self

    @property
    def durable_enabled(self) -> bool:
        return bool(self.durable_database_url.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Call directly in non-request contexts (startup, scripts). Tests should
    construct Settings explicitly instead.
    """
    return Settings()
