"""
Tests for the gateway entry point.

GatewayConfig.__post_init__ validation and the Gateway lifecycle.
"""

from __future__ import annotations

import asyncio

import pytest
from scripts.run_gateway import Gateway, GatewayConfig, run_gateway

from brokergate.scheduler.config import SchedulerConfig


class TestGatewayConfig:
    """GatewayConfig validation."""

    def test_default_config_valid(self) -> None:
        config = GatewayConfig()
        assert config.port == 9100
        assert config.poll_account_s is None
        assert config.json_logs is True

    @pytest.mark.parametrize("port", [-1, 70000])
    def test_invalid_port(self, port: int) -> None:
        with pytest.raises(ValueError, match="port"):
            GatewayConfig(port=port)

    def test_port_zero_disables_server(self) -> None:
        assert GatewayConfig(port=0).port == 0

    def test_empty_host(self) -> None:
        with pytest.raises(ValueError, match="host"):
            GatewayConfig(host="")

    @pytest.mark.parametrize("interval", [0, 3601])
    def test_invalid_poll_interval(self, interval: int) -> None:
        with pytest.raises(ValueError, match="poll_account_s"):
            GatewayConfig(poll_account_s=interval)

    def test_invalid_duration(self) -> None:
        with pytest.raises(ValueError, match="duration_s"):
            GatewayConfig(duration_s=0)


class TestGatewayLifecycle:
    """Gateway run/stop without network access."""

    @pytest.mark.asyncio
    async def test_run_stops_after_shutdown_request(self) -> None:
        gateway = Gateway(GatewayConfig(port=0), SchedulerConfig())
        task = asyncio.create_task(gateway.run())
        await asyncio.sleep(0)
        gateway.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        await gateway.stop()
        assert gateway.scheduler.is_closed

    @pytest.mark.asyncio
    async def test_dry_run_exits_zero(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("BROKERGATE_REQUESTS_PER_MINUTE", raising=False)
        assert await run_gateway(GatewayConfig(port=0, dry_run=True)) == 0

    @pytest.mark.asyncio
    async def test_invalid_env_exits_two(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BROKERGATE_REQUESTS_PER_MINUTE", "lots")
        assert await run_gateway(GatewayConfig(port=0, dry_run=True)) == 2
