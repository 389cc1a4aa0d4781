"""
Tests for the operator control surface.

GET/POST /rate-limiter, GET /metrics and GET /healthz.
"""

from __future__ import annotations

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from brokergate.contracts import SchedulerStatus
from brokergate.scheduler.config import SchedulerConfig
from brokergate.scheduler.control_server import create_control_app, describe_status
from brokergate.scheduler.scheduler import RequestScheduler
from brokergate.scheduler.types import SchedulerStats


def make_scheduler() -> RequestScheduler:
    return RequestScheduler(SchedulerConfig(inter_request_delay_ms=0))


class TestDescribeStatus:
    def test_throttled(self) -> None:
        status, message = describe_status(
            SchedulerStats(is_throttled=True, throttle_remaining_ms=2100)
        )
        assert status == SchedulerStatus.THROTTLED
        assert message == "Throttled for 3 more seconds"

    def test_processing(self) -> None:
        status, message = describe_status(SchedulerStats(is_draining=True))
        assert status == SchedulerStatus.PROCESSING
        assert message == "Processing requests"

    def test_idle(self) -> None:
        status, message = describe_status(SchedulerStats())
        assert status == SchedulerStatus.IDLE
        assert message == "Scheduler idle"


class TestRateLimiterEndpoint:
    """GET/POST /rate-limiter."""

    @pytest.mark.asyncio
    async def test_get_returns_stats(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.get("/rate-limiter")
            assert resp.status == 200
            body = await resp.json()

        assert body["success"] is True
        assert body["data"]["status"] == "idle"
        assert body["data"]["queue_size"] == 0
        assert body["data"]["per_endpoint_stats"] == []
        assert "timestamp" in body
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_post_throttle(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.post(
                "/rate-limiter", json={"action": "throttle", "duration_ms": 5000}
            )
            assert resp.status == 200
            body = await resp.json()
            assert body["message"] == "Rate limiter throttled for 5000ms"

            resp = await client.get("/rate-limiter")
            data = (await resp.json())["data"]

        assert data["is_throttled"] is True
        assert data["status"] == "throttled"
        assert data["message"].startswith("Throttled for")
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_post_throttle_default_duration(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.post("/rate-limiter", json={"action": "throttle"})
            body = await resp.json()

        assert body["message"] == "Rate limiter throttled for 10000ms"
        assert scheduler.get_stats().throttle_remaining_ms > 9000
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_post_clear(self) -> None:
        scheduler = make_scheduler()
        scheduler.throttle(60000)  # Hold everything in the queue

        async def never_dispatched() -> None:
            raise AssertionError("should have been cleared")

        pending = [scheduler.schedule("/v2/clock", never_dispatched) for _ in range(3)]

        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.post("/rate-limiter", json={"action": "clear"})
            assert resp.status == 200
            body = await resp.json()

        assert body["message"] == "Rate limiter queue cleared"
        assert body["data"]["rejected"] == 3
        results = await asyncio.gather(*pending, return_exceptions=True)
        assert all(type(r).__name__ == "QueueClearedError" for r in results)
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_post_stats(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.post("/rate-limiter", json={"action": "stats"})
            body = await resp.json()

        assert body["success"] is True
        assert body["data"]["status"] == "idle"
        await scheduler.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            b'{"action": "pause"}',
            b'{"action": "throttle", "duration_ms": -5}',
            b'{"action": "throttle", "duration_ms": 0}',
            b'{"action": "clear", "extra": 1}',
            b"{}",
            b"not json",
        ],
    )
    async def test_post_invalid(self, payload: bytes) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.post(
                "/rate-limiter",
                data=payload,
                headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400
            body = await resp.json()

        assert body["success"] is False
        assert body["error"] == "Invalid action. Use: clear, throttle, or stats"
        await scheduler.close()


class TestMetricsAndHealth:
    """GET /metrics and GET /healthz."""

    @pytest.mark.asyncio
    async def test_metrics(self) -> None:
        scheduler = make_scheduler()
        scheduler.throttle(1000)
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            assert resp.headers.get("Content-Type", "").startswith("text/plain")
            body = await resp.text()

        assert "brokergate_sched_queue_size 0.0" in body
        assert "brokergate_sched_throttled 1.0" in body
        assert "# TYPE brokergate_sched_dispatched_total counter" in body
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_healthz_ok(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.get("/healthz")
            assert resp.status == 200
            body = await resp.json()

        assert body == {"status": "ok", "scheduler": "idle", "queue_size": 0}
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_healthz_closed(self) -> None:
        scheduler = make_scheduler()
        await scheduler.close()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.get("/healthz")
            assert resp.status == 503
            body = await resp.json()

        assert body["status"] == "closed"

    @pytest.mark.asyncio
    async def test_unknown_path(self) -> None:
        scheduler = make_scheduler()
        async with TestClient(TestServer(create_control_app(scheduler))) as client:
            resp = await client.get("/unknown")
            assert resp.status == 404
        await scheduler.close()
