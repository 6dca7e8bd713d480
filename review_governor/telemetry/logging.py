"""Structured logging configuration.

Configures structlog with JSON output in production and a coloured console
renderer in development. Every component logs dotted event names with
key/value context, e.g.::

    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "warning",
        "event": "governor.throttled",
        "logger": "review_governor.governor.governor",
        "attempt": 1,
        "max_retries": 3,
        "cooldown_seconds": 2.0,
        "app_id": "1234567890"
    }
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_app_context(app_id: str, territory: str | None = None) -> None:
    """Bind the application identifier a caller is working on to log context.

    Args:
        app_id: App-store application identifier
        territory: Optional region/territory qualifier
    """
    structlog.contextvars.bind_contextvars(app_id=str(app_id))
    if territory is not None:
        structlog.contextvars.bind_contextvars(territory=territory)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
