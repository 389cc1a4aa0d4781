"""
Rate-limit policy configuration.

Defaults follow the brokerage's published quotas with headroom:
- Global: 150 requests/minute, burst of 5 per endpoint per 5s
- Account/positions reads: 60/min
- Orders: 120/min
- Quote/trade market data: 180/min

Exceeding the provider quota results in hard connection resets, so every
limit here is a ceiling the scheduler never crosses.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from urllib.parse import urlsplit

WINDOW_MS = 60000
BURST_WINDOW_MS = 5000


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable rate-limit policy for the global window or one endpoint."""

    requests_per_minute: int = 150
    burst_limit: int = 5  # Max dispatches to one endpoint within burst window
    retry_delay_base_ms: int = 1000
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.requests_per_minute < 1:
            msg = f"requests_per_minute must be >= 1, got {self.requests_per_minute}"
            raise ValueError(msg)
        if self.burst_limit < 1:
            msg = f"burst_limit must be >= 1, got {self.burst_limit}"
            raise ValueError(msg)
        if self.retry_delay_base_ms < 0:
            msg = f"retry_delay_base_ms must be >= 0, got {self.retry_delay_base_ms}"
            raise ValueError(msg)
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValueError(msg)


# Per-endpoint quota (requests/minute) applied on top of the default policy
DEFAULT_ENDPOINT_RPM: dict[str, int] = {
    "/v2/account": 60,
    "/v2/positions": 60,
    "/v2/orders": 120,
    "/v2/stocks": 180,
    "/v1beta3/crypto": 180,
}


def default_endpoint_policies(base: RateLimitConfig) -> dict[str, RateLimitConfig]:
    """Built-in overrides: only requests_per_minute differs from base."""
    return {
        prefix: replace(base, requests_per_minute=rpm)
        for prefix, rpm in DEFAULT_ENDPOINT_RPM.items()
    }


def normalize_endpoint(endpoint: str) -> str:
    """Strip scheme/host/query so limits key on the path only."""
    path = urlsplit(endpoint).path
    return path or "/"


@dataclass
class SchedulerConfig:
    """
    Configuration for the request scheduler.

    Attributes:
        default_policy: Global policy; also used for endpoints with no override.
        endpoint_policies: Path prefix -> policy override (longest prefix wins).
            None derives the built-in overrides from default_policy, so they
            differ from it in requests_per_minute only.
        window_ms: Sliding window length for per-minute quotas.
        burst_window_ms: Sliding window length for the burst cap.
        wait_buffer_ms: Added to computed waits so the oldest entry has expired.
        inter_request_delay_ms: Pause after each successful dispatch.
        default_cache_ttl_ms: TTL used when a cache key is given without a TTL.
        cache_sweep_interval_ms: Period of the expired-entry sweep.
        max_retry_delay_ms: Cap for linear generic-failure backoff.
        max_throttle_delay_ms: Cap for exponential throttle backoff.
        throttle_jitter_ms: Upper bound (exclusive) of throttle jitter.
        inflight_dedupe: Join identical keyed requests already pending.
    """

    default_policy: RateLimitConfig = field(default_factory=RateLimitConfig)
    endpoint_policies: dict[str, RateLimitConfig] | None = None
    window_ms: int = WINDOW_MS
    burst_window_ms: int = BURST_WINDOW_MS
    wait_buffer_ms: int = 100
    inter_request_delay_ms: int = 100
    default_cache_ttl_ms: int = 5000
    cache_sweep_interval_ms: int = 60000
    max_retry_delay_ms: int = 5000
    max_throttle_delay_ms: int = 30000
    throttle_jitter_ms: int = 1000
    inflight_dedupe: bool = True

    def __post_init__(self) -> None:
        for name in (
            "window_ms",
            "burst_window_ms",
            "cache_sweep_interval_ms",
        ):
            value = getattr(self, name)
            if value <= 0:
                msg = f"{name} must be > 0, got {value}"
                raise ValueError(msg)
        for name in (
            "wait_buffer_ms",
            "inter_request_delay_ms",
            "default_cache_ttl_ms",
            "max_retry_delay_ms",
            "max_throttle_delay_ms",
            "throttle_jitter_ms",
        ):
            value = getattr(self, name)
            if value < 0:
                msg = f"{name} must be >= 0, got {value}"
                raise ValueError(msg)
        if self.endpoint_policies is None:
            self.endpoint_policies = default_endpoint_policies(self.default_policy)
        # Normalize override keys once so lookups compare like with like
        self.endpoint_policies = {
            normalize_endpoint(prefix): policy
            for prefix, policy in self.endpoint_policies.items()
        }

    def resolve(self, endpoint: str) -> tuple[str, RateLimitConfig]:
        """
        Resolve the window key and policy for an endpoint.

        Endpoints sharing an override prefix share one window (every
        /v2/orders/{id} call counts against /v2/orders). Endpoints without an
        override get their own window under the default policy.

        Returns:
            (window_key, policy) tuple.
        """
        path = normalize_endpoint(endpoint)
        policies = self.endpoint_policies or {}
        best: str | None = None
        for prefix in policies:
            if path.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return path, self.default_policy
        return best, policies[best]

    def policy_for(self, endpoint: str) -> RateLimitConfig:
        """Resolve the policy for an endpoint (longest matching prefix)."""
        return self.resolve(endpoint)[1]

    @property
    def max_retries(self) -> int:
        """Retry bound of the default policy; overrides may carry their own."""
        return self.default_policy.max_retries

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> SchedulerConfig:
        """
        Build config from BROKERGATE_* environment variables.

        Unset variables keep their defaults. Non-integer values raise ValueError.
        """
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return int(raw)
            except ValueError:
                msg = f"{name} must be an integer, got {raw!r}"
                raise ValueError(msg) from None

        base = RateLimitConfig()
        policy = replace(
            base,
            requests_per_minute=_int("BROKERGATE_REQUESTS_PER_MINUTE", base.requests_per_minute),
            burst_limit=_int("BROKERGATE_BURST_LIMIT", base.burst_limit),
            max_retries=_int("BROKERGATE_MAX_RETRIES", base.max_retries),
            retry_delay_base_ms=_int(
                "BROKERGATE_RETRY_DELAY_BASE_MS", base.retry_delay_base_ms
            ),
        )
        return cls(
            default_policy=policy,
            inter_request_delay_ms=_int("BROKERGATE_INTER_REQUEST_DELAY_MS", 100),
            default_cache_ttl_ms=_int("BROKERGATE_CACHE_TTL_MS", 5000),
        )
