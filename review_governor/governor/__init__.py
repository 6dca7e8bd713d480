"""Outbound request governor.

Public API:
    RequestGovernor         - FIFO queue with pacing and throttle-aware retries
    GovernorStatus          - Diagnostic snapshot returned by get_status()
    ThrottleEvent           - Payload delivered to throttle listeners
    UpstreamThrottledError  - Raise from a task to signal "rate limited"
    RetriesExhaustedError   - Task still throttled after every attempt
    TaskTimeoutError        - Task exceeded the per-task timeout
    GovernorClosedError     - Work rejected because the governor shut down
"""

from review_governor.governor.governor import (
    GovernorClosedError,
    GovernorError,
    GovernorStatus,
    RequestGovernor,
    RetriesExhaustedError,
    TaskTimeoutError,
)
from review_governor.governor.throttle import (
    ThrottleEvent,
    ThrottleSignal,
    UpstreamThrottledError,
    detect_throttle,
    parse_retry_after,
    raise_for_throttle,
)

__all__ = [
    "GovernorClosedError",
    "GovernorError",
    "GovernorStatus",
    "RequestGovernor",
    "RetriesExhaustedError",
    "TaskTimeoutError",
    "ThrottleEvent",
    "ThrottleSignal",
    "UpstreamThrottledError",
    "detect_throttle",
    "parse_retry_after",
    "raise_for_throttle",
]
