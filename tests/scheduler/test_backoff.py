"""
Tests for throttle classification and backoff delays.

- 429, connection resets and rate-limit messages are throttles
- Retry-After is preferred over computed backoff
- Generic failures back off linearly, capped
"""

from __future__ import annotations

import random

import aiohttp
import pytest

from brokergate.scheduler.backoff import (
    BackoffController,
    Failed,
    Throttled,
    classify_failure,
    is_throttle_error,
)
from brokergate.scheduler.config import RateLimitConfig, SchedulerConfig
from brokergate.scheduler.errors import BrokerageHTTPError


class TestIsThrottleError:
    """Throttle detection."""

    def test_http_429(self) -> None:
        assert is_throttle_error(BrokerageHTTPError("Alpaca API error 429", status=429))

    def test_other_status_not_throttle(self) -> None:
        assert not is_throttle_error(BrokerageHTTPError("Alpaca API error 500", status=500))
        assert not is_throttle_error(BrokerageHTTPError("forbidden", status=403))

    def test_connection_reset(self) -> None:
        assert is_throttle_error(ConnectionResetError("peer reset"))

    def test_server_disconnected(self) -> None:
        assert is_throttle_error(aiohttp.ServerDisconnectedError())

    @pytest.mark.parametrize(
        "message",
        [
            "read ECONNRESET",
            "Connection reset by peer",
            "Rate limit exceeded",
            "429 Too Many Requests",
        ],
    )
    def test_throttle_messages(self, message: str) -> None:
        assert is_throttle_error(RuntimeError(message))

    def test_plain_failure(self) -> None:
        assert not is_throttle_error(ValueError("insufficient buying power"))


class TestClassifyFailure:
    """Tagged outcome folding."""

    def test_throttled_carries_retry_after(self) -> None:
        error = BrokerageHTTPError("slow down", status=429, retry_after_ms=3000)
        outcome = classify_failure(error)
        assert isinstance(outcome, Throttled)
        assert outcome.error is error
        assert outcome.retry_after_ms == 3000

    def test_throttled_without_retry_after(self) -> None:
        outcome = classify_failure(ConnectionResetError())
        assert isinstance(outcome, Throttled)
        assert outcome.retry_after_ms is None

    def test_generic_failure(self) -> None:
        error = KeyError("boom")
        outcome = classify_failure(error)
        assert isinstance(outcome, Failed)
        assert outcome.error is error


class TestBackoffController:
    """Delay computation."""

    def make(self, base: int = 1000, **overrides: int) -> BackoffController:
        config = SchedulerConfig(
            default_policy=RateLimitConfig(retry_delay_base_ms=base),
            **overrides,
        )
        return BackoffController(config=config, rng=random.Random(42))

    def test_retry_delay_linear(self) -> None:
        backoff = self.make(base=1000)
        assert backoff.delay_for_retry(1) == 1000
        assert backoff.delay_for_retry(2) == 2000
        assert backoff.delay_for_retry(3) == 3000

    def test_retry_delay_capped(self) -> None:
        backoff = self.make(base=1000, max_retry_delay_ms=5000)
        assert backoff.delay_for_retry(10) == 5000

    def test_throttle_prefers_retry_after(self) -> None:
        backoff = self.make()
        assert backoff.delay_for_throttle(0, retry_after_ms=7000) == 7000
        # Retry-After is used as-is even past the computed cap
        assert backoff.delay_for_throttle(0, retry_after_ms=45000) == 45000

    def test_throttle_exponential_with_jitter(self) -> None:
        backoff = self.make(base=1000, throttle_jitter_ms=1000)
        for retry_count, floor in ((0, 1000), (1, 2000), (2, 4000), (3, 8000)):
            delay = backoff.delay_for_throttle(retry_count)
            assert floor <= delay < floor + 1000

    def test_throttle_capped(self) -> None:
        backoff = self.make(base=1000, max_throttle_delay_ms=30000)
        assert backoff.delay_for_throttle(10) == 30000

    def test_throttle_no_jitter(self) -> None:
        backoff = self.make(base=500, throttle_jitter_ms=0)
        assert backoff.delay_for_throttle(2) == 2000

    def test_seeded_jitter_deterministic(self) -> None:
        a = self.make()
        b = self.make()
        assert [a.delay_for_throttle(1) for _ in range(5)] == [
            b.delay_for_throttle(1) for _ in range(5)
        ]

    def test_zero_retry_after_ignored(self) -> None:
        backoff = self.make(base=1000, throttle_jitter_ms=0)
        assert backoff.delay_for_throttle(1, retry_after_ms=0) == 2000
