"""
Sliding-window rate limit tracking.

Three gates must all pass before a dispatch:
- Global window: total dispatches in the trailing 60s < global requests_per_minute
- Endpoint window: dispatches to the endpoint in the trailing 60s < its policy
- Burst window: dispatches to the endpoint in the trailing 5s < burst_limit

wait_time_for() returns the maximum of the three waits; the scheduler re-checks
after sleeping, so a stale answer can only make it wait again, never overshoot.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from brokergate.scheduler.config import SchedulerConfig
from brokergate.scheduler.types import EndpointStats

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass
class EndpointWindowState:
    """Per-endpoint dispatch timestamps (retained while younger than the window)."""

    timestamps: deque[int] = field(default_factory=deque)
    last_request_at_ms: int = 0


def _prune(window: deque[int], now_ms: int, window_ms: int) -> None:
    """Drop timestamps that have left the trailing window."""
    cutoff = now_ms - window_ms
    while window and window[0] <= cutoff:
        window.popleft()


def _window_wait(
    window: deque[int],
    now_ms: int,
    window_ms: int,
    limit: int,
    buffer_ms: int,
) -> int:
    """
    Wait until one more dispatch fits in a pruned window.

    When the window holds n >= limit entries, the entry at index n - limit
    must expire before count drops below limit.
    """
    if len(window) < limit:
        return 0
    pivot = window[len(window) - limit]
    return max(0, pivot + window_ms - now_ms + buffer_ms)


@dataclass
class RateLimitTracker:
    """
    Trailing-window counters for global, per-endpoint and burst limits.

    Endpoint windows are keyed by SchedulerConfig.resolve(), so all calls
    under one override prefix share a window.
    """

    config: SchedulerConfig = field(default_factory=SchedulerConfig)

    _global: deque[int] = field(default_factory=deque, init=False)
    _endpoints: dict[str, EndpointWindowState] = field(default_factory=dict, init=False)

    # Time provider for deterministic testing
    _time_fn: Callable[[], int] | None = field(default=None)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def _state_for(self, key: str) -> EndpointWindowState:
        state = self._endpoints.get(key)
        if state is None:
            state = EndpointWindowState()
            self._endpoints[key] = state
        return state

    def _burst_slice(self, state: EndpointWindowState, now_ms: int) -> deque[int]:
        """Timestamps of the endpoint window that fall inside the burst window."""
        cutoff = now_ms - self.config.burst_window_ms
        return deque(ts for ts in state.timestamps if ts > cutoff)

    def global_wait_ms(self, now_ms: int | None = None) -> int:
        """Wait required by the global window alone."""
        now = self._now_ms() if now_ms is None else now_ms
        _prune(self._global, now, self.config.window_ms)
        return _window_wait(
            self._global,
            now,
            self.config.window_ms,
            self.config.default_policy.requests_per_minute,
            self.config.wait_buffer_ms,
        )

    def endpoint_wait_ms(self, endpoint: str, now_ms: int | None = None) -> int:
        """Wait required by the endpoint's own per-minute policy."""
        now = self._now_ms() if now_ms is None else now_ms
        key, policy = self.config.resolve(endpoint)
        state = self._endpoints.get(key)
        if state is None:
            return 0
        _prune(state.timestamps, now, self.config.window_ms)
        return _window_wait(
            state.timestamps,
            now,
            self.config.window_ms,
            policy.requests_per_minute,
            self.config.wait_buffer_ms,
        )

    def burst_wait_ms(self, endpoint: str, now_ms: int | None = None) -> int:
        """Wait required by the endpoint's burst cap."""
        now = self._now_ms() if now_ms is None else now_ms
        key, policy = self.config.resolve(endpoint)
        state = self._endpoints.get(key)
        if state is None:
            return 0
        return _window_wait(
            self._burst_slice(state, now),
            now,
            self.config.burst_window_ms,
            policy.burst_limit,
            self.config.wait_buffer_ms,
        )

    def wait_time_for(self, endpoint: str) -> int:
        """
        Time to wait before a dispatch to endpoint stays under every quota.

        Args:
            endpoint: Endpoint path (query strings are ignored).

        Returns:
            Milliseconds to wait (0 if a dispatch may proceed now).
        """
        now_ms = self._now_ms()
        return max(
            self.global_wait_ms(now_ms),
            self.endpoint_wait_ms(endpoint, now_ms),
            self.burst_wait_ms(endpoint, now_ms),
        )

    def record(self, endpoint: str, timestamp_ms: int | None = None) -> None:
        """
        Record a dispatch in the global and endpoint windows.

        Args:
            endpoint: Endpoint path.
            timestamp_ms: Dispatch time (default now).
        """
        ts = self._now_ms() if timestamp_ms is None else timestamp_ms
        key, _ = self.config.resolve(endpoint)
        state = self._state_for(key)
        self._global.append(ts)
        state.timestamps.append(ts)
        state.last_request_at_ms = max(state.last_request_at_ms, ts)

    def global_count(self) -> int:
        """Dispatches in the trailing global window."""
        _prune(self._global, self._now_ms(), self.config.window_ms)
        return len(self._global)

    def endpoint_status(self, endpoint: str) -> EndpointStats:
        """Limiter health for one endpoint window."""
        now_ms = self._now_ms()
        key, policy = self.config.resolve(endpoint)
        state = self._endpoints.get(key) or EndpointWindowState()
        _prune(state.timestamps, now_ms, self.config.window_ms)
        in_window = len(state.timestamps)
        reset_at = (
            state.timestamps[0] + self.config.window_ms if state.timestamps else now_ms
        )
        return EndpointStats(
            endpoint=key,
            requests_in_window=in_window,
            requests_per_minute=policy.requests_per_minute,
            requests_remaining=max(0, policy.requests_per_minute - in_window),
            burst_in_window=len(self._burst_slice(state, now_ms)),
            burst_limit=policy.burst_limit,
            last_request_at_ms=state.last_request_at_ms,
            window_reset_at_ms=reset_at,
        )

    def all_endpoint_status(self) -> list[EndpointStats]:
        """Status for every endpoint that has dispatched within the window."""
        stats = [self.endpoint_status(key) for key in sorted(self._endpoints)]
        # Forget endpoints whose windows emptied out
        for stat in stats:
            if stat.requests_in_window == 0:
                self._endpoints.pop(stat.endpoint, None)
        return [s for s in stats if s.requests_in_window > 0]

    def reset(self) -> None:
        """Reset all windows."""
        self._global.clear()
        self._endpoints.clear()
