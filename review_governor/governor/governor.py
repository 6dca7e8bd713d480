"""Request governor for a single rate-limited upstream.

Serialises and paces every outbound call so the application stays inside
the upstream's rate budget, and recovers from throttling automatically.

Two states:
    Idle      - queue empty, no drain task
    Draining  - one drain task pops and runs entries, strictly FIFO

The drain loop, per entry:
1. If a cooldown is active, sleep until it elapses
2. Sleep the rest of ``min_interval`` since the previous dispatch
3. Pop the head entry and run it with the retry policy
4. Settle the caller's future with the result or the error

Retry policy (tenacity):
- Only throttling signals are retried (see throttle.detect_throttle)
- Cooldown = the upstream's Retry-After hint if present, otherwise
  ``base_delay * 2 ** (attempt - 1)`` plus optional jitter
- A task gets at most ``max_retries`` attempts in total, then the caller
  receives RetriesExhaustedError
- Any other error is propagated immediately, never retried

A task waiting out a cooldown blocks everything behind it. The upstream has
one global budget, and head-of-line blocking keeps completion order equal
to submission order.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from review_governor.config import Settings
from review_governor.governor.throttle import ThrottleEvent, detect_throttle

log = structlog.get_logger(__name__)

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[Any]]
ThrottleListener = Callable[[ThrottleEvent], Any]


class GovernorError(Exception):
    """Base exception for failures produced by the governor itself."""


class RetriesExhaustedError(GovernorError):
    """The upstream kept throttling after every allowed attempt."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(
            f"Rate limit exceeded after {attempts} attempts. Please try again later."
        )
        self.attempts = attempts
        self.last_error = last_error


class TaskTimeoutError(GovernorError):
    """A task did not settle within the configured per-task timeout."""


class GovernorClosedError(GovernorError):
    """The governor was shut down before the task could run."""


@dataclass
class _QueueEntry:
    task: TaskFactory
    future: asyncio.Future[Any]


@dataclass(frozen=True)
class GovernorStatus:
    """Read-only diagnostic snapshot."""

    queue_length: int
    is_processing: bool
    retry_after: float | None
    is_rate_limited: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RequestGovernor:
    """FIFO queue with pacing and throttle-aware retries.

    One instance guards one upstream. Build it explicitly and pass it to the
    callers that need it; close it with aclose() (or ``async with``).

    Args:
        min_interval: Minimum seconds between consecutive dispatches
        max_retries: Total attempts allowed per task while throttled
        base_delay: Base of the exponential backoff, in seconds
        jitter: Upper bound of uniform jitter added to exponential backoff
        task_timeout: Per-attempt timeout in seconds, None for no timeout
        clock: Time source for pacing and cooldown timestamps
        sleep: Coroutine used for every wait, injectable for tests
    """

    def __init__(
        self,
        *,
        min_interval: float = 1.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.0,
        task_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._min_interval = min_interval
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter = jitter
        self._task_timeout = task_timeout
        self._clock = clock
        self._sleep = sleep

        self._queue: deque[_QueueEntry] = deque()
        self._processing = False
        self._retry_after: float | None = None
        self._last_request_time = float("-inf")
        self._drain_task: asyncio.Task[None] | None = None
        self._current: _QueueEntry | None = None
        self._closed = False

        self._listeners: list[ThrottleListener] = []
        self._listener_tasks: set[asyncio.Future[Any]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> RequestGovernor:
        kwargs: dict[str, Any] = {
            "min_interval": settings.governor_min_interval_seconds,
            "max_retries": settings.governor_max_retries,
            "base_delay": settings.governor_base_delay_seconds,
            "jitter": settings.governor_jitter_seconds,
            "task_timeout": settings.governor_task_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def __aenter__(self) -> RequestGovernor:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, task: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``task`` and return a future for its eventual result.

        ``task`` is a zero-argument callable returning an awaitable; it runs
        once it reaches the head of the queue. Never blocks and never raises;
        must be called while an event loop is running.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        if self._closed:
            future.set_exception(GovernorClosedError("Governor is closed"))
            return future

        self._queue.append(_QueueEntry(task=task, future=future))
        log.debug("governor.task_submitted", queue_length=len(self._queue))

        if not self._processing:
            self._processing = True
            self._drain_task = loop.create_task(self._drain())
        return future

    def add_listener(self, listener: ThrottleListener) -> Callable[[], None]:
        """Register a throttle listener. Returns a function that unregisters it.

        Listeners may be plain callables or coroutine functions; either way
        they are fire-and-forget and their failures are only logged.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def get_status(self) -> GovernorStatus:
        retry_after = self._retry_after
        return GovernorStatus(
            queue_length=len(self._queue),
            is_processing=self._processing,
            retry_after=retry_after,
            is_rate_limited=retry_after is not None and self._clock() < retry_after,
        )

    async def aclose(self) -> None:
        """Stop draining and reject everything still pending."""
        self._closed = True
        pending = list(self._queue)
        if self._current is not None:
            pending.insert(0, self._current)
        self._queue.clear()

        drain_task = self._drain_task
        if drain_task is not None and not drain_task.done():
            drain_task.cancel()
            await asyncio.gather(drain_task, return_exceptions=True)
        self._current = None
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(GovernorClosedError("Governor closed before task completed"))

        if self._listener_tasks:
            await asyncio.gather(*self._listener_tasks, return_exceptions=True)

        self._processing = False
        self._retry_after = None
        self._drain_task = None
        log.info("governor.closed", rejected=len(pending))

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        try:
            while self._queue:
                now = self._clock()
                if self._retry_after is not None and now < self._retry_after:
                    await self._sleep(self._retry_after - now)

                since_last = self._clock() - self._last_request_time
                if since_last < self._min_interval:
                    await self._sleep(self._min_interval - since_last)

                entry = self._queue.popleft()
                if entry.future.done():
                    # Caller cancelled while the entry was queued
                    continue

                self._current = entry
                self._last_request_time = self._clock()
                try:
                    result = await self._execute(entry.task)
                except asyncio.CancelledError:
                    drain_task = asyncio.current_task()
                    if drain_task is not None and drain_task.cancelling():
                        raise
                    # The task cancelled itself; the queue keeps draining
                    log.warning("governor.task_cancelled")
                    entry.future.cancel()
                except Exception as exc:
                    if not entry.future.done():
                        entry.future.set_exception(exc)
                else:
                    if not entry.future.done():
                        entry.future.set_result(result)
                finally:
                    self._current = None
        finally:
            self._processing = False
            self._drain_task = None
            log.debug("governor.idle")

    async def _execute(self, task: TaskFactory) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=self._cooldown,
            retry=retry_if_exception(lambda exc: detect_throttle(exc) is not None),
            before=self._clear_cooldown,
            before_sleep=self._enter_cooldown,
            retry_error_callback=self._raise_exhausted,
            sleep=self._sleep,
        )
        return await retrying(self._run_once, task)

    async def _run_once(self, task: TaskFactory) -> Any:
        if self._task_timeout is None:
            return await task()
        try:
            return await asyncio.wait_for(task(), timeout=self._task_timeout)
        except TimeoutError as exc:
            raise TaskTimeoutError(
                f"Task did not complete within {self._task_timeout}s"
            ) from exc

    # ------------------------------------------------------------------
    # Retry hooks
    # ------------------------------------------------------------------

    def _cooldown(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        signal = detect_throttle(exc) if exc is not None else None
        if signal is not None and signal.retry_after is not None:
            return signal.retry_after

        delay = self._base_delay * 2 ** (retry_state.attempt_number - 1)
        if self._jitter:
            delay += random.uniform(0, self._jitter)
        return delay

    def _clear_cooldown(self, retry_state: RetryCallState) -> None:
        self._retry_after = None

    def _enter_cooldown(self, retry_state: RetryCallState) -> None:
        cooldown = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._retry_after = self._clock() + cooldown
        event = ThrottleEvent(
            retry_after=self._retry_after,
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            cooldown=cooldown,
        )
        log.warning(
            "governor.throttled",
            attempt=event.attempt,
            max_retries=event.max_retries,
            cooldown_seconds=round(cooldown, 3),
            queue_length=len(self._queue),
        )
        self._notify(event)

    def _raise_exhausted(self, retry_state: RetryCallState) -> Any:
        last_error = retry_state.outcome.exception() if retry_state.outcome else None
        self._retry_after = None
        log.error(
            "governor.retries_exhausted",
            attempts=retry_state.attempt_number,
            error=str(last_error),
        )
        raise RetriesExhaustedError(retry_state.attempt_number, last_error) from last_error

    def _notify(self, event: ThrottleEvent) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
            except Exception:
                log.exception("governor.listener_failed")
                continue
            if inspect.isawaitable(outcome):
                pending = asyncio.ensure_future(outcome)
                self._listener_tasks.add(pending)
                pending.add_done_callback(self._listener_done)

    def _listener_done(self, future: asyncio.Future[Any]) -> None:
        self._listener_tasks.discard(future)
        if not future.cancelled() and future.exception() is not None:
            log.warning("governor.listener_failed", error=str(future.exception()))
