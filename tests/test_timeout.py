"""Tests for the inactivity watchdog around model calls."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from coe.core.config import TimeoutGuardConfig
from coe.llm import ModelResponse, ModelServiceError
from coe.orchestrator.timeout import TIMEOUT_MESSAGE, TimeoutGuard
from coe.tickets import TicketStatus, TicketType


def _guard(store=None, threshold: float = 0.3, interval: float = 0.05, **kwargs) -> TimeoutGuard:
    config = TimeoutGuardConfig(
        max_response_seconds=threshold,
        watchdog_interval=interval,
        **kwargs,
    )
    return TimeoutGuard(store, config)


async def _never_resolves(token):
    await asyncio.Event().wait()


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_success_returns_value(self):
        guard = _guard()

        async def op(token):
            return "hello"

        result = await guard.with_timeout("r1", op)

        assert result.success
        assert result.value == "hello"
        assert result.content == "hello"
        assert not result.timed_out
        assert guard.active_count == 0

    @pytest.mark.asyncio
    async def test_model_response_content(self):
        guard = _guard()

        async def op(token):
            return ModelResponse(content="42")

        result = await guard.with_timeout("r1", op)
        assert result.success
        assert result.content == "42"

    @pytest.mark.asyncio
    async def test_never_resolving_call_times_out_promptly(self, store):
        guard = _guard(store, threshold=0.3, interval=0.05)

        started = time.monotonic()
        result = await guard.with_timeout("q-1", _never_resolves, {"question": "Why?"})
        elapsed = time.monotonic() - started

        assert result.timed_out
        assert not result.success
        assert result.error == TIMEOUT_MESSAGE
        assert elapsed < 0.3 + 0.05 + 0.5
        assert result.ticket_id is not None
        assert guard.active_count == 0

    @pytest.mark.asyncio
    async def test_one_second_limit_against_five_second_call(self, store):
        guard = _guard(store, threshold=1.0, interval=0.1)

        async def slow(token):
            await asyncio.sleep(5)
            return "too late"

        started = time.monotonic()
        result = await guard.with_timeout("q-slow", slow, {"question": "Slow?", "task_id": "t1"})

        assert time.monotonic() - started < 2.5
        assert result.timed_out
        tickets = await store.list()
        assert len(tickets) == 1
        ticket = tickets[0]
        assert ticket.title == "TIMEOUT: Answer needed for question (q-slow)"
        assert ticket.status == TicketStatus.ESCALATED
        assert ticket.type == TicketType.AI_TO_HUMAN
        assert ticket.task_id == "t1"
        assert "Slow?" in ticket.description
        assert ticket.id == result.ticket_id

    @pytest.mark.asyncio
    async def test_steady_stream_never_times_out(self):
        guard = _guard(threshold=0.3, interval=0.05)

        async def streaming(token):
            chunks = []
            for i in range(8):
                await asyncio.sleep(0.1)
                token.touch()
                chunks.append(str(i))
            return "".join(chunks)

        result = await guard.with_timeout("stream", streaming)

        assert result.success
        assert result.value == "01234567"
        assert result.elapsed_ms >= 600

    @pytest.mark.asyncio
    async def test_cooperative_operation_sees_cancel(self):
        guard = _guard(threshold=0.2, interval=0.05)
        seen = asyncio.Event()

        async def cooperative(token):
            try:
                await token.wait()
                token.raise_if_cancelled()
            finally:
                seen.set()

        result = await guard.with_timeout("coop", cooperative)

        assert result.timed_out
        await asyncio.wait_for(seen.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_no_ticket_when_disabled(self, store):
        guard = _guard(store, threshold=0.1, interval=0.05, create_ticket_on_timeout=False)

        result = await guard.with_timeout("r1", _never_resolves)

        assert result.timed_out
        assert result.ticket_id is None
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_ticket_failure_is_swallowed(self, store):
        store.create = AsyncMock(side_effect=RuntimeError("store down"))
        guard = _guard(store, threshold=0.1, interval=0.05)

        result = await guard.with_timeout("r1", _never_resolves)

        assert result.timed_out
        assert result.ticket_id is None
        store.create.assert_awaited_once()


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_model_response_is_failure(self):
        guard = _guard()

        async def op(token):
            return ModelResponse.failed("HTTP 500")

        result = await guard.with_timeout("r1", op)

        assert not result.success
        assert not result.timed_out
        assert result.error == "HTTP 500"
        assert result.content == ""

    @pytest.mark.asyncio
    async def test_expected_error_becomes_result(self):
        guard = _guard()

        async def op(token):
            raise ModelServiceError("connection refused")

        result = await guard.with_timeout("r1", op)

        assert not result.success
        assert result.error == "connection refused"
        assert guard.active_count == 0

    @pytest.mark.asyncio
    async def test_programming_error_propagates(self):
        guard = _guard()

        async def op(token):
            return {}["missing"]

        with pytest.raises(KeyError):
            await guard.with_timeout("r1", op)
        assert guard.active_count == 0


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_in_flight_call(self, store):
        guard = _guard(store, threshold=5.0, interval=0.05)
        task = asyncio.create_task(guard.with_timeout("r1", _never_resolves))
        await asyncio.sleep(0.05)

        assert guard.active_count == 1
        assert guard.cancel("r1") is True
        result = await asyncio.wait_for(task, timeout=1)

        assert result.cancelled
        assert not result.timed_out
        assert result.error == "cancelled"
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_id(self):
        assert _guard().cancel("nope") is False

    @pytest.mark.asyncio
    async def test_cancel_matching_and_all(self):
        guard = _guard(threshold=5.0)
        tasks = [
            asyncio.create_task(guard.with_timeout(rid, _never_resolves))
            for rid in ("task-1:a", "task-1:b", "task-2:a")
        ]
        await asyncio.sleep(0.05)

        assert guard.cancel_matching("task-1:") == 2
        assert guard.cancel_all() == 1
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
        assert all(r.cancelled for r in results)


class TestSetTimeoutSeconds:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1, 5.0), (5, 5.0), (45, 45.0), (300, 300.0), (1000, 300.0)],
    )
    def test_clamped(self, value, expected):
        guard = _guard()
        assert guard.set_timeout_seconds(value) == expected
        assert guard.config.max_response_seconds == expected
