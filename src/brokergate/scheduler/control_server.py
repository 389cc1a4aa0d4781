"""
HTTP control surface for the request scheduler.

Routes:
- GET  /rate-limiter  -> stats + status (throttled | processing | idle)
- POST /rate-limiter  -> {"action": "clear" | "throttle" | "stats", "duration_ms": int?}
- GET  /metrics       -> Prometheus exposition of scheduler metrics
- GET  /healthz       -> {"status": "ok", ...}

Uses aiohttp.web (already a dependency for the brokerage client).
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import orjson
from aiohttp import web
from prometheus_client import generate_latest
from pydantic import ValidationError

from brokergate.contracts import (
    ControlAction,
    ControlRequest,
    ControlResponse,
    SchedulerStatus,
)
from brokergate.scheduler.exporter import SchedulerMetricsExporter

if TYPE_CHECKING:
    from brokergate.scheduler.scheduler import RequestScheduler
    from brokergate.scheduler.types import SchedulerStats

logger = logging.getLogger(__name__)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def describe_status(stats: SchedulerStats) -> tuple[SchedulerStatus, str]:
    """Coarse status and operator-facing message for a stats snapshot."""
    if stats.is_throttled:
        seconds = math.ceil(stats.throttle_remaining_ms / 1000)
        return SchedulerStatus.THROTTLED, f"Throttled for {seconds} more seconds"
    if stats.is_draining:
        return SchedulerStatus.PROCESSING, "Processing requests"
    return SchedulerStatus.IDLE, "Scheduler idle"


def _json_response(payload: ControlResponse, status: int = 200) -> web.Response:
    return web.Response(
        body=payload.to_json(),
        status=status,
        content_type="application/json",
    )


def _stats_payload(scheduler: RequestScheduler) -> dict[str, object]:
    stats = scheduler.get_stats()
    status, message = describe_status(stats)
    data: dict[str, object] = stats.to_dict()
    data["status"] = status.value
    data["message"] = message
    return data


def _make_stats_handler(scheduler: RequestScheduler) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        return _json_response(ControlResponse(success=True, data=_stats_payload(scheduler)))

    return handler


def _make_control_handler(scheduler: RequestScheduler) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        try:
            body = orjson.loads(await request.read())
            control = ControlRequest.model_validate(body)
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.info("Rejected control request", extra={"error": str(e)[:200]})
            return _json_response(
                ControlResponse(
                    success=False,
                    error="Invalid action. Use: clear, throttle, or stats",
                ),
                status=400,
            )

        if control.action == ControlAction.CLEAR:
            rejected = scheduler.clear_queue()
            return _json_response(
                ControlResponse(
                    success=True,
                    message="Rate limiter queue cleared",
                    data={"rejected": rejected},
                )
            )

        if control.action == ControlAction.THROTTLE:
            duration_ms = control.effective_duration_ms()
            scheduler.throttle(duration_ms)
            return _json_response(
                ControlResponse(
                    success=True,
                    message=f"Rate limiter throttled for {duration_ms}ms",
                )
            )

        return _json_response(ControlResponse(success=True, data=_stats_payload(scheduler)))

    return handler


def _make_metrics_handler(
    scheduler: RequestScheduler,
    exporter: SchedulerMetricsExporter,
) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        exporter.update(scheduler.get_stats())
        return web.Response(
            body=generate_latest(exporter.registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(scheduler: RequestScheduler) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        stats = scheduler.get_stats()
        status, _ = describe_status(stats)
        info = {
            "status": "closed" if scheduler.is_closed else "ok",
            "scheduler": status.value,
            "queue_size": stats.queue_size,
        }
        return web.Response(
            body=orjson.dumps(info),
            status=503 if scheduler.is_closed else 200,
            content_type="application/json",
        )

    return handler


def create_control_app(
    scheduler: RequestScheduler,
    *,
    exporter: SchedulerMetricsExporter | None = None,
) -> web.Application:
    """
    Create aiohttp Application exposing the scheduler's control surface.

    Args:
        scheduler: Scheduler to inspect and control.
        exporter: Metrics exporter (a fresh one with its own registry if None).

    Returns:
        aiohttp.web.Application ready to be started.
    """
    exporter = exporter or SchedulerMetricsExporter()
    app = web.Application()
    app.router.add_get("/rate-limiter", _make_stats_handler(scheduler))
    app.router.add_post("/rate-limiter", _make_control_handler(scheduler))
    app.router.add_get("/metrics", _make_metrics_handler(scheduler, exporter))
    app.router.add_get("/healthz", _make_healthz_handler(scheduler))
    return app


async def start_control_server(
    scheduler: RequestScheduler,
    host: str = "127.0.0.1",
    port: int = 9100,
    *,
    exporter: SchedulerMetricsExporter | None = None,
) -> web.AppRunner:
    """
    Start the control HTTP server.

    Returns:
        AppRunner (pass to stop_control_server() on shutdown).
    """
    app = create_control_app(scheduler, exporter=exporter)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Control server started on http://%s:%d/rate-limiter", host, port)
    return runner


async def stop_control_server(runner: web.AppRunner) -> None:
    """Stop the control HTTP server."""
    await runner.cleanup()
    logger.info("Control server stopped")
