"""Tests for the request governor.

Coverage:
- FIFO dispatch order and minimum spacing between dispatches
- Throttle retry: cooldown events, exponential backoff, Retry-After hints
- Exhaustion after exactly max_retries attempts
- Non-throttle errors propagate without retry
- Head-of-line blocking during a cooldown
- Status snapshots, listeners, per-task timeout, shutdown
"""

from __future__ import annotations

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from review_governor.governor import (
    GovernorClosedError,
    RequestGovernor,
    RetriesExhaustedError,
    TaskTimeoutError,
    ThrottleEvent,
    UpstreamThrottledError,
)


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _governor(fake_clock: Any, **kwargs: Any) -> RequestGovernor:
    options: dict[str, Any] = {"min_interval": 1.0, "max_retries": 3, "base_delay": 1.0}
    options.update(kwargs)
    return RequestGovernor(clock=fake_clock, sleep=fake_clock.sleep, **options)


def _throttling_task(failures: int, result: Any = "ok", retry_after: float | None = None):
    """Task that is throttled ``failures`` times, then succeeds."""
    calls = {"count": 0}

    async def task() -> Any:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise UpstreamThrottledError(retry_after=retry_after)
        return result

    return task, calls


# ------------------------------------------------------------------ #
# Ordering and spacing
# ------------------------------------------------------------------ #


class TestDispatchOrder:
    """Submission order, completion order and pacing."""

    @pytest.mark.asyncio
    async def test_five_tasks_run_in_order_with_spacing(self, fake_clock):
        """Five tasks dispatch in submission order, at least 1s apart."""
        governor = _governor(fake_clock)
        dispatched: list[tuple[int, float]] = []

        def make(i: int):
            async def task() -> int:
                dispatched.append((i, fake_clock()))
                return i

            return task

        futures = [governor.submit(make(i)) for i in range(5)]
        results = await asyncio.gather(*futures)

        assert results == [0, 1, 2, 3, 4]
        assert [i for i, _ in dispatched] == [0, 1, 2, 3, 4]
        times = [t for _, t in dispatched]
        gaps = [later - earlier for earlier, later in zip(times, times[1:])]
        assert all(gap >= 1.0 for gap in gaps)
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_first_task_dispatches_without_waiting(self, fake_clock):
        """An idle governor with no history dispatches immediately."""
        governor = _governor(fake_clock)
        result = await governor.submit(AsyncMock(return_value="now"))
        assert result == "now"
        assert fake_clock.sleeps == []
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_spacing_counts_from_previous_dispatch(self, fake_clock):
        """A slow task's own duration counts toward the spacing."""
        governor = _governor(fake_clock)

        async def slow() -> str:
            fake_clock.advance(0.75)
            return "slow"

        fast = AsyncMock(return_value="fast")
        first = governor.submit(slow)
        second = governor.submit(fast)
        assert await first == "slow"
        assert await second == "fast"
        assert fake_clock.sleeps == [pytest.approx(0.25)]
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_results_are_delivered_even_when_falsy(self, fake_clock):
        """Falsy results settle the future like any other value."""
        governor = _governor(fake_clock)
        assert await governor.submit(AsyncMock(return_value=0)) == 0
        assert await governor.submit(AsyncMock(return_value=None)) is None
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_real_clock_spacing(self):
        """With the real clock, three tasks are spaced by min_interval."""
        governor = RequestGovernor(min_interval=0.05, max_retries=1)
        stamps: list[float] = []

        async def task() -> None:
            stamps.append(time.monotonic())

        await asyncio.gather(*(governor.submit(task) for _ in range(3)))
        gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
        assert all(gap >= 0.045 for gap in gaps)
        await governor.aclose()


# ------------------------------------------------------------------ #
# Throttling and retries
# ------------------------------------------------------------------ #


class TestThrottleRetry:
    """Cooldowns, backoff and exhaustion."""

    @pytest.mark.asyncio
    async def test_throttled_twice_then_succeeds(self, fake_clock):
        """Two throttles emit two events and the third attempt succeeds."""
        governor = _governor(fake_clock)
        events: list[ThrottleEvent] = []
        governor.add_listener(events.append)
        task, calls = _throttling_task(failures=2)

        assert await governor.submit(task) == "ok"

        assert calls["count"] == 3
        assert [e.attempt for e in events] == [1, 2]
        assert [e.max_retries for e in events] == [3, 3]
        assert [e.cooldown for e in events] == [1.0, 2.0]
        assert 1.0 in fake_clock.sleeps
        assert 2.0 in fake_clock.sleeps
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_always_throttled_exhausts_after_max_retries(self, fake_clock):
        """A task that never stops being throttled is attempted exactly max_retries times."""
        governor = _governor(fake_clock)
        events: list[ThrottleEvent] = []
        governor.add_listener(events.append)
        task, calls = _throttling_task(failures=100)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await governor.submit(task)

        assert calls["count"] == 3
        assert len(events) == 2
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, UpstreamThrottledError)
        assert "Rate limit exceeded after 3 attempts" in str(exc_info.value)
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_single_attempt_budget_fails_without_event(self, fake_clock):
        """With max_retries=1 a throttle fails immediately and emits nothing."""
        governor = _governor(fake_clock, max_retries=1)
        listener = MagicMock()
        governor.add_listener(listener)
        task, calls = _throttling_task(failures=1)

        with pytest.raises(RetriesExhaustedError):
            await governor.submit(task)

        assert calls["count"] == 1
        listener.assert_not_called()
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_non_throttle_error_is_not_retried(self, fake_clock):
        """Ordinary failures reach the caller after a single attempt."""
        governor = _governor(fake_clock)
        task = AsyncMock(side_effect=ValueError("bad payload"))
        listener = MagicMock()
        governor.add_listener(listener)

        with pytest.raises(ValueError, match="bad payload"):
            await governor.submit(task)

        assert task.await_count == 1
        listener.assert_not_called()
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_retry_after_hint_overrides_backoff(self, fake_clock):
        """The upstream's Retry-After hint is used verbatim as the cooldown."""
        governor = _governor(fake_clock)
        events: list[ThrottleEvent] = []
        governor.add_listener(events.append)
        task, _ = _throttling_task(failures=1, retry_after=5.0)

        assert await governor.submit(task) == "ok"
        assert events[0].cooldown == 5.0
        assert 5.0 in fake_clock.sleeps
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_httpx_429_is_recognised(self, fake_clock):
        """An httpx 429 with Retry-After is treated as a throttle."""
        governor = _governor(fake_clock)
        events: list[ThrottleEvent] = []
        governor.add_listener(events.append)
        calls = {"count": 0}

        async def task() -> str:
            calls["count"] += 1
            if calls["count"] == 1:
                request = httpx.Request("POST", "https://api.example.com/v1/chat")
                response = httpx.Response(429, headers={"Retry-After": "7"}, request=request)
                raise httpx.HTTPStatusError("429", request=request, response=response)
            return "done"

        assert await governor.submit(task) == "done"
        assert events[0].cooldown == 7.0
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_jitter_only_adds_to_backoff(self, fake_clock):
        """Jitter stretches exponential backoff within its bound."""
        governor = _governor(fake_clock, jitter=0.5)
        events: list[ThrottleEvent] = []
        governor.add_listener(events.append)
        task, _ = _throttling_task(failures=1)

        await governor.submit(task)
        assert 1.0 <= events[0].cooldown <= 1.5
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_cooldown_blocks_later_tasks(self, fake_clock):
        """A task behind a throttled one waits for it and completes after it."""
        governor = _governor(fake_clock)
        completed: list[str] = []
        throttled, _ = _throttling_task(failures=1, result="first")

        async def first() -> str:
            value = await throttled()
            completed.append(value)
            return value

        async def second() -> str:
            completed.append("second")
            return "second"

        results = await asyncio.gather(governor.submit(first), governor.submit(second))
        assert results == ["first", "second"]
        assert completed == ["first", "second"]
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_status_reports_rate_limited_during_cooldown(self, fake_clock):
        """While a cooldown is active the snapshot says so."""
        governor = _governor(fake_clock)
        snapshots = []
        governor.add_listener(lambda event: snapshots.append(governor.get_status()))
        task, _ = _throttling_task(failures=1)
        governor.submit(task)
        follower = governor.submit(AsyncMock(return_value=None))

        await follower
        status = snapshots[0]
        assert status.is_rate_limited is True
        assert status.is_processing is True
        assert status.queue_length == 1
        assert status.retry_after == pytest.approx(fake_clock.now, abs=5.0)
        await governor.aclose()


# ------------------------------------------------------------------ #
# Listeners, status, timeout, shutdown
# ------------------------------------------------------------------ #


class TestGovernorLifecycle:
    """Listeners, snapshots, timeouts and aclose()."""

    @pytest.mark.asyncio
    async def test_idle_status(self, fake_clock):
        """A fresh governor reports an empty, idle, unthrottled state."""
        governor = _governor(fake_clock)
        status = governor.get_status()
        assert status.to_dict() == {
            "queue_length": 0,
            "is_processing": False,
            "retry_after": None,
            "is_rate_limited": False,
        }

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_retry(self, fake_clock):
        """A raising listener is logged and the task still completes."""
        governor = _governor(fake_clock)
        governor.add_listener(MagicMock(side_effect=RuntimeError("listener bug")))
        task, _ = _throttling_task(failures=1)
        assert await governor.submit(task) == "ok"
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_async_listener_is_scheduled(self, fake_clock):
        """Coroutine listeners run without blocking the queue."""
        governor = _governor(fake_clock)
        listener = AsyncMock()
        governor.add_listener(listener)
        task, _ = _throttling_task(failures=1)

        await governor.submit(task)
        await asyncio.sleep(0)
        listener.assert_awaited_once()
        assert isinstance(listener.await_args.args[0], ThrottleEvent)
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_notifications(self, fake_clock):
        """The callable returned by add_listener removes the listener."""
        governor = _governor(fake_clock)
        listener = MagicMock()
        unsubscribe = governor.add_listener(listener)
        unsubscribe()
        task, _ = _throttling_task(failures=1)

        await governor.submit(task)
        listener.assert_not_called()
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_task_timeout_rejects_without_retry(self, fake_clock):
        """A task exceeding the per-task timeout fails with TaskTimeoutError."""
        governor = _governor(fake_clock, task_timeout=0.01)
        calls = {"count": 0}

        async def hung() -> None:
            calls["count"] += 1
            await asyncio.sleep(1)

        with pytest.raises(TaskTimeoutError):
            await governor.submit(hung)
        assert calls["count"] == 1

        assert await governor.submit(AsyncMock(return_value="next")) == "next"
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_self_cancelling_task_does_not_stall_the_queue(self, fake_clock):
        """A task raising CancelledError settles its own future and the queue drains on."""
        governor = _governor(fake_clock)

        async def cancels_itself() -> None:
            raise asyncio.CancelledError()

        cancelled = governor.submit(cancels_itself)
        following = governor.submit(AsyncMock(return_value="next"))

        assert await asyncio.wait_for(following, timeout=1) == "next"
        assert cancelled.cancelled()
        status = governor.get_status()
        assert status.queue_length == 0
        assert status.is_processing is False
        await governor.aclose()

    @pytest.mark.asyncio
    async def test_aclose_rejects_pending_tasks(self, fake_clock):
        """Shutting down fails the running task and everything queued behind it."""
        governor = _governor(fake_clock)
        blocker = asyncio.Event()

        async def stuck() -> None:
            await blocker.wait()

        running = governor.submit(stuck)
        queued = governor.submit(AsyncMock(return_value="never"))
        await asyncio.sleep(0)

        await governor.aclose()

        with pytest.raises(GovernorClosedError):
            await running
        with pytest.raises(GovernorClosedError):
            await queued
        assert governor.get_status().queue_length == 0

    @pytest.mark.asyncio
    async def test_submit_after_close_fails_fast(self, fake_clock):
        """A closed governor rejects new work immediately."""
        governor = _governor(fake_clock)
        await governor.aclose()
        task = AsyncMock()

        with pytest.raises(GovernorClosedError):
            await governor.submit(task)
        task.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_context_manager_closes(self, fake_clock):
        """Leaving the context closes the governor."""
        async with _governor(fake_clock) as governor:
            assert await governor.submit(AsyncMock(return_value=1)) == 1
        with pytest.raises(GovernorClosedError):
            await governor.submit(AsyncMock())

    def test_from_settings(self, fake_settings):
        """Settings supply every tunable."""
        governor = RequestGovernor.from_settings(fake_settings)
        assert governor.max_retries == fake_settings.governor_max_retries

    def test_rejects_zero_attempt_budget(self):
        """max_retries below 1 is a configuration error."""
        with pytest.raises(ValueError):
            RequestGovernor(max_retries=0)
