"""Throttle signals and notifications.

The governor retries a task only when the upstream explicitly says the
caller is over its rate budget. This module decides what counts as that
signal and extracts the upstream's "retry after N seconds" hint:

- UpstreamThrottledError raised by the task itself
- httpx.HTTPStatusError for a 429 response
- any SDK exception exposing ``status_code`` or ``status`` equal to 429
  (OpenAI, LiteLLM and friends), with headers on ``exc.response``

The Retry-After header may carry either delta-seconds or an HTTP-date.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

TOO_MANY_REQUESTS = 429


class UpstreamThrottledError(Exception):
    """The upstream rejected a call because the rate limit was exceeded."""

    def __init__(
        self,
        message: str = "Upstream rate limit exceeded",
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(frozen=True)
class ThrottleSignal:
    """A recognised throttling response and its optional cooldown hint."""

    retry_after: float | None = None


@dataclass(frozen=True)
class ThrottleEvent:
    """Emitted each time the governor enters a cooldown.

    ``retry_after`` is the wall-clock timestamp (seconds since the epoch, or
    whatever clock the governor was built with) at which the queue resumes.
    """

    retry_after: float
    attempt: int
    max_retries: int
    cooldown: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_retry_after(value: str | float | int | None) -> float | None:
    """Turn a Retry-After value into seconds from now."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))

    text = value.strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def _header_hint(response: Any) -> float | None:
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        return parse_retry_after(headers.get("retry-after"))
    except AttributeError:
        return None


def detect_throttle(exc: BaseException) -> ThrottleSignal | None:
    """Return a ThrottleSignal if ``exc`` means "rate limited", else None."""
    if isinstance(exc, UpstreamThrottledError):
        return ThrottleSignal(retry_after=exc.retry_after)

    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code != TOO_MANY_REQUESTS:
            return None
        return ThrottleSignal(retry_after=_header_hint(exc.response))

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    if status == TOO_MANY_REQUESTS:
        return ThrottleSignal(retry_after=_header_hint(getattr(exc, "response", None)))
    return None


def raise_for_throttle(response: httpx.Response) -> httpx.Response:
    """Raise UpstreamThrottledError for a 429 response, otherwise pass it through."""
    if response.status_code == TOO_MANY_REQUESTS:
        raise UpstreamThrottledError(
            "Upstream responded 429 Too Many Requests",
            retry_after=_header_hint(response),
        )
    return response
