"""
Backoff and throttle classification for brokerage calls.

Per the provider's limits:
- HTTP 429, connection resets and "rate limit" / "too many requests" messages
  mean the account-wide quota was hit: throttle everything, exponential backoff
- Provider Retry-After is preferred over computed backoff when present
- Any other failure is generic: linear backoff, capped

Operation results are folded into a tagged Outcome so the processor loop
branches on type instead of nesting exception handlers.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from brokergate.scheduler.config import RateLimitConfig, SchedulerConfig

_THROTTLE_MESSAGES = ("rate limit", "too many requests")
_RESET_MESSAGES = ("econnreset", "connection reset")


@dataclass(frozen=True)
class Success:
    """Operation returned a value."""

    value: Any


@dataclass(frozen=True)
class Throttled:
    """Operation failed because the provider is throttling the account."""

    error: BaseException
    retry_after_ms: int | None = None


@dataclass(frozen=True)
class Failed:
    """Operation failed for any other reason."""

    error: BaseException


Outcome = Success | Throttled | Failed


def _retry_after_of(error: BaseException) -> int | None:
    """Extract a provider Retry-After hint (ms) if the error carries one."""
    retry_after = getattr(error, "retry_after_ms", None)
    if isinstance(retry_after, (int, float)) and retry_after > 0:
        return int(retry_after)
    return None


def is_throttle_error(error: BaseException) -> bool:
    """
    Check whether a failure indicates provider throttling.

    Matches HTTP 429 (``status`` attribute), connection resets, and messages
    containing "rate limit" or "too many requests" (case-insensitive).
    """
    status = getattr(error, "status", None)
    if status == 429:
        return True
    if isinstance(error, (ConnectionResetError, aiohttp.ServerDisconnectedError)):
        return True
    message = str(error).lower()
    if any(marker in message for marker in _RESET_MESSAGES):
        return True
    return any(marker in message for marker in _THROTTLE_MESSAGES)


def classify_failure(error: BaseException) -> Throttled | Failed:
    """Fold a raised exception into a tagged outcome."""
    if is_throttle_error(error):
        return Throttled(error=error, retry_after_ms=_retry_after_of(error))
    return Failed(error=error)


@dataclass
class BackoffController:
    """
    Retry delay computation.

    delay_for_retry: min(retry_delay_base_ms * retry_count, max_retry_delay_ms)
    delay_for_throttle: Retry-After if given, else
        min(retry_delay_base_ms * 2**retry_count + jitter, max_throttle_delay_ms)
        with jitter uniform in [0, throttle_jitter_ms).
    """

    config: SchedulerConfig = field(default_factory=SchedulerConfig)

    # Seeded RNG for deterministic jitter in tests
    rng: random.Random | None = field(default=None)

    def _jitter_ms(self) -> float:
        upper = self.config.throttle_jitter_ms
        if upper <= 0:
            return 0.0
        source = self.rng if self.rng is not None else random
        return source.random() * upper

    def delay_for_retry(self, retry_count: int, policy: RateLimitConfig | None = None) -> int:
        """Linear, capped delay for a generic failure under policy (default if None)."""
        base = (policy or self.config.default_policy).retry_delay_base_ms
        return int(min(base * retry_count, self.config.max_retry_delay_ms))

    def delay_for_throttle(
        self,
        retry_count: int,
        retry_after_ms: int | None = None,
        policy: RateLimitConfig | None = None,
    ) -> int:
        """
        Delay before dispatch may resume after provider throttling.

        Args:
            retry_count: Retries already performed for the failing request.
            retry_after_ms: Provider Retry-After hint (ms), preferred when present.
            policy: Policy supplying retry_delay_base_ms (default policy if None).

        Returns:
            Delay in milliseconds.
        """
        if retry_after_ms is not None and retry_after_ms > 0:
            return int(retry_after_ms)
        base = (policy or self.config.default_policy).retry_delay_base_ms
        delay = base * (2**retry_count) + self._jitter_ms()
        return int(min(delay, self.config.max_throttle_delay_ms))
