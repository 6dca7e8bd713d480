"""Structured logging for the governor and cache tiers."""

from review_governor.telemetry.logging import (
    bind_app_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_app_context",
    "clear_context",
    "configure_logging",
]
