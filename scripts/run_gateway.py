#!/usr/bin/env python3
"""
Run the brokerage request gateway.

Starts a RequestScheduler with its operator control server
(/rate-limiter, /metrics, /healthz) and, optionally, an account poller that
reads the Alpaca account through the scheduler on a fixed interval.

Usage:
    python -m scripts.run_gateway --port 9100
    python -m scripts.run_gateway --poll-account-s 30  # needs APCA_API_KEY_ID/SECRET_KEY
    python -m scripts.run_gateway --duration-s 60 --no-json-logs

Scheduler limits come from BROKERGATE_* env vars (see SchedulerConfig.from_env).
Shutdown via SIGINT/SIGTERM or --duration-s timeout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass

from brokergate.alpaca.client import AlpacaRestClient
from brokergate.alpaca.types import AlpacaConfig
from brokergate.logging_config import setup_logging
from brokergate.scheduler.config import SchedulerConfig
from brokergate.scheduler.control_server import start_control_server, stop_control_server
from brokergate.scheduler.errors import SchedulerError
from brokergate.scheduler.exporter import SchedulerMetricsExporter
from brokergate.scheduler.scheduler import RequestScheduler

logger = logging.getLogger(__name__)


@dataclass
class GatewayConfig:
    """Configuration for the gateway process."""

    # Control server bind address
    host: str = "127.0.0.1"

    # Control server port (0 = disabled)
    port: int = 9100

    # Account poll interval in seconds (None = no poller)
    poll_account_s: int | None = None

    # Duration in seconds (None = run until SIGINT/SIGTERM)
    duration_s: int | None = None

    verbose: bool = False
    json_logs: bool = True

    # Validate config, start and stop the control server, exit
    dry_run: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            msg = f"port must be 0..65535, got {self.port}"
            raise ValueError(msg)
        if not self.host:
            msg = "host must not be empty"
            raise ValueError(msg)
        if self.poll_account_s is not None and not 1 <= self.poll_account_s <= 3600:
            msg = f"poll_account_s must be 1..3600, got {self.poll_account_s}"
            raise ValueError(msg)
        if self.duration_s is not None and self.duration_s <= 0:
            msg = f"duration_s must be > 0, got {self.duration_s}"
            raise ValueError(msg)


class Gateway:
    """Scheduler, control server and optional account poller under one lifecycle."""

    def __init__(
        self,
        config: GatewayConfig,
        scheduler_config: SchedulerConfig | None = None,
    ) -> None:
        self._config = config
        self._scheduler = RequestScheduler(scheduler_config or SchedulerConfig.from_env())
        self._exporter = SchedulerMetricsExporter()
        self._client: AlpacaRestClient | None = None
        self._running = False

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def exporter(self) -> SchedulerMetricsExporter:
        return self._exporter

    def request_shutdown(self) -> None:
        """Request graceful shutdown; the main loop exits on its next tick."""
        logger.info("Shutdown requested")
        self._running = False

    async def _poll_account_once(self) -> None:
        assert self._client is not None  # Type narrowing
        try:
            account = await self._client.get_account()
        except SchedulerError as e:
            logger.warning(
                "Account poll failed",
                extra={"error_type": type(e).__name__, "error": str(e)},
            )
            return
        logger.info(
            "Account polled",
            extra={
                "status": account.get("status"),
                "equity": account.get("equity"),
                "buying_power": account.get("buying_power"),
            },
        )

    async def run(self) -> None:
        """Run until shutdown is requested or the duration elapses."""
        self._running = True
        if self._config.poll_account_s is not None:
            self._client = AlpacaRestClient(self._scheduler, AlpacaConfig.from_env())

        started = time.monotonic()
        next_poll = started
        while self._running:
            now = time.monotonic()
            if self._config.duration_s is not None and now - started >= self._config.duration_s:
                logger.info("Duration elapsed, stopping")
                break
            if self._client is not None and now >= next_poll:
                await self._poll_account_once()
                next_poll = now + (self._config.poll_account_s or 0)
            await asyncio.sleep(0.5)

    async def stop(self) -> None:
        """Close the client and the scheduler. Safe to call more than once."""
        self._running = False
        if self._client is not None:
            await self._client.close()
        await self._scheduler.close()


def setup_signal_handlers(gateway: Gateway) -> None:
    """Route SIGINT/SIGTERM to gateway.request_shutdown()."""

    def signal_handler(sig: int, frame: object) -> None:
        logger.info("Received signal %s, initiating shutdown", signal.Signals(sig).name)
        gateway.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def run_gateway(config: GatewayConfig) -> int:
    """
    Run the gateway.

    Returns:
        Exit code (0 = success).
    """
    try:
        gateway = Gateway(config)
    except ValueError as e:
        logger.error("Invalid scheduler configuration: %s", e)
        return 2

    runner = None
    if config.port > 0:
        runner = await start_control_server(
            gateway.scheduler,
            host=config.host,
            port=config.port,
            exporter=gateway.exporter,
        )

    if config.dry_run:
        logger.info("Dry-run mode: config valid, control server up, exiting")
        await gateway.stop()
        if runner is not None:
            await stop_control_server(runner)
        return 0

    setup_signal_handlers(gateway)

    try:
        await gateway.run()
        return 0
    except Exception as e:
        logger.exception("Gateway failed: %s", e)
        return 1
    finally:
        await gateway.stop()
        if runner is not None:
            await stop_control_server(runner)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the brokerage request gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Control server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=9100,
        help="Control server port (0 to disable, default: 9100)",
    )
    parser.add_argument(
        "--poll-account-s",
        type=int,
        default=None,
        help="Poll the Alpaca account every N seconds (default: disabled)",
    )
    parser.add_argument(
        "--duration-s",
        type=int,
        default=None,
        help="Run for N seconds then stop (default: run until SIGINT/SIGTERM)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-json-logs",
        action="store_true",
        help="Human-readable log lines instead of JSON",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config, start the control server, exit",
    )

    args = parser.parse_args()

    try:
        config = GatewayConfig(
            host=args.host,
            port=args.port,
            poll_account_s=args.poll_account_s,
            duration_s=args.duration_s,
            verbose=args.verbose,
            json_logs=not args.no_json_logs,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        parser.error(str(e))

    setup_logging(
        level=logging.DEBUG if config.verbose else logging.INFO,
        json_format=config.json_logs,
    )

    logger.info("Starting brokerage gateway")
    logger.info("  Control server: %s", f"{config.host}:{config.port}" if config.port else "disabled")
    logger.info(
        "  Account poll: %s",
        f"every {config.poll_account_s}s" if config.poll_account_s else "disabled",
    )

    return asyncio.run(run_gateway(config))


if __name__ == "__main__":
    sys.exit(main())
