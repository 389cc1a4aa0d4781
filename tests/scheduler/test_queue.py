"""Tests for the priority request queue."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from brokergate.scheduler.errors import QueueClearedError
from brokergate.scheduler.queue import PriorityRequestQueue
from brokergate.scheduler.types import Priority, QueuedRequest


async def _noop() -> Any:
    return None


def make_request(
    loop: asyncio.AbstractEventLoop,
    request_id: str,
    priority: Priority = Priority.NORMAL,
    enqueued_at: int = 0,
) -> QueuedRequest:
    return QueuedRequest(
        id=request_id,
        endpoint="/v2/clock",
        priority=priority,
        operation=_noop,
        future=loop.create_future(),
        enqueued_at=enqueued_at,
    )


def drain(queue: PriorityRequestQueue) -> list[str]:
    ids = []
    while (request := queue.pop_next()) is not None:
        ids.append(request.id)
    return ids


class TestPriorityOrdering:
    """high > normal > low, FIFO within a tier."""

    @pytest.mark.asyncio
    async def test_priority_order(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        queue.push(make_request(loop, "low", Priority.LOW))
        queue.push(make_request(loop, "normal", Priority.NORMAL))
        queue.push(make_request(loop, "high", Priority.HIGH))

        assert drain(queue) == ["high", "normal", "low"]

    @pytest.mark.asyncio
    async def test_fifo_within_tier(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        for i in range(5):
            queue.push(make_request(loop, f"n{i}", Priority.NORMAL, enqueued_at=100))

        assert drain(queue) == ["n0", "n1", "n2", "n3", "n4"]

    @pytest.mark.asyncio
    async def test_interleaved_tiers(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        queue.push(make_request(loop, "n1", Priority.NORMAL, enqueued_at=1))
        queue.push(make_request(loop, "h1", Priority.HIGH, enqueued_at=2))
        queue.push(make_request(loop, "l1", Priority.LOW, enqueued_at=3))
        queue.push(make_request(loop, "h2", Priority.HIGH, enqueued_at=4))
        queue.push(make_request(loop, "n2", Priority.NORMAL, enqueued_at=5))

        assert drain(queue) == ["h1", "h2", "n1", "n2", "l1"]

    @pytest.mark.asyncio
    async def test_push_front_beats_every_tier(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        queue.push(make_request(loop, "high", Priority.HIGH))
        queue.push_front(make_request(loop, "retry", Priority.LOW))

        assert drain(queue) == ["retry", "high"]

    def test_pop_empty(self) -> None:
        queue = PriorityRequestQueue()
        assert queue.pop_next() is None
        assert not queue
        assert len(queue) == 0


class TestQueueClear:
    """clear() rejects every removed request."""

    @pytest.mark.asyncio
    async def test_clear_rejects_all(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        requests = [make_request(loop, f"r{i}") for i in range(3)]
        for request in requests:
            queue.push(request)

        assert queue.clear("operator") == 3
        assert len(queue) == 0
        for request in requests:
            with pytest.raises(QueueClearedError, match="operator"):
                request.future.result()

    @pytest.mark.asyncio
    async def test_clear_skips_already_done(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        cancelled = make_request(loop, "cancelled")
        cancelled.future.cancel()
        queue.push(cancelled)
        queue.push(make_request(loop, "live"))

        assert queue.clear() == 1

    def test_clear_empty(self) -> None:
        assert PriorityRequestQueue().clear() == 0


class TestQueuePromote:
    """promote() moves a waiting request to a higher tier."""

    @pytest.mark.asyncio
    async def test_promote_jumps_lower_tiers(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        low = make_request(loop, "low", Priority.LOW)
        queue.push(low)
        for i in range(3):
            queue.push(make_request(loop, f"n{i}"))
        queue.push(make_request(loop, "h1", Priority.HIGH, enqueued_at=5))

        assert queue.promote(low, Priority.HIGH) is True
        assert low.priority == Priority.HIGH
        assert drain(queue) == ["low", "h1", "n0", "n1", "n2"]

    @pytest.mark.asyncio
    async def test_promote_never_demotes(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        high = make_request(loop, "high", Priority.HIGH)
        queue.push(high)
        queue.push(make_request(loop, "normal"))

        assert queue.promote(high, Priority.LOW) is False
        assert high.priority == Priority.HIGH
        assert drain(queue) == ["high", "normal"]

    @pytest.mark.asyncio
    async def test_promote_ignores_request_not_in_heap(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        retry = make_request(loop, "retry", Priority.LOW)
        queue.push_front(retry)

        assert queue.promote(retry, Priority.HIGH) is False
        assert queue.promote(make_request(loop, "gone", Priority.LOW), Priority.HIGH) is False
        assert drain(queue) == ["retry"]


class TestQueueLookup:
    """Inspection helpers."""

    @pytest.mark.asyncio
    async def test_counts_by_priority(self) -> None:
        loop = asyncio.get_running_loop()
        queue = PriorityRequestQueue()
        queue.push(make_request(loop, "h", Priority.HIGH))
        queue.push(make_request(loop, "l1", Priority.LOW))
        queue.push_front(make_request(loop, "l2", Priority.LOW))

        assert queue.counts_by_priority() == {"high": 1, "normal": 0, "low": 2}
