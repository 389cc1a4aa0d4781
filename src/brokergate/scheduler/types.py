"""
Types for the brokerage request scheduler.

Per the provider's published quotas:
- Every outbound call is a QueuedRequest ordered by priority, then FIFO
- Throttle state is process-wide and halts all dispatch while active
- Stats are read-only snapshots for operational dashboards
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class Priority(str, Enum):
    """Request priority tier."""

    HIGH = "high"  # Order writes, account reads used by trading logic
    NORMAL = "normal"
    LOW = "low"  # Background dashboard refreshes

    @property
    def rank(self) -> int:
        """Sort rank (lower dispatches first)."""
        return _PRIORITY_RANK[self]

    @classmethod
    def coerce(cls, value: Priority | str) -> Priority:
        """Accept either a Priority or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            msg = f"Invalid priority {value!r}, expected one of: high, normal, low"
            raise ValueError(msg) from None


_PRIORITY_RANK: dict[Priority, int] = {
    Priority.HIGH: 0,
    Priority.NORMAL: 1,
    Priority.LOW: 2,
}


@dataclass
class QueuedRequest:
    """
    One pending unit of work.

    Attributes:
        id: Opaque identifier assigned at enqueue time.
        endpoint: Logical resource path used to select rate-limit policy.
        priority: Priority tier.
        operation: Zero-arg coroutine function performing exactly one remote call.
        future: Single-resolution handle awaited by the caller.
        enqueued_at: Enqueue timestamp (ms), FIFO tiebreaker within a tier.
        seq: Monotonic admission counter, breaks ties between equal timestamps.
        retry_count: Retries performed so far (mutated only by the scheduler).
        cache_key: Optional key for response caching and in-flight dedupe.
        cache_ttl_ms: TTL for the cached response.
    """

    id: str
    endpoint: str
    priority: Priority
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    enqueued_at: int
    seq: int = 0
    retry_count: int = 0
    cache_key: str | None = None
    cache_ttl_ms: int | None = None

    def sort_key(self) -> tuple[int, int, int]:
        """Heap key: priority rank, then enqueue time, then admission order."""
        return (self.priority.rank, self.enqueued_at, self.seq)

    def resolve(self, value: Any) -> bool:
        """Resolve the caller's future once. Returns False if already done."""
        if self.future.done():
            return False
        self.future.set_result(value)
        return True

    def reject(self, error: BaseException) -> bool:
        """Reject the caller's future once. Returns False if already done."""
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True


@dataclass
class ThrottleState:
    """Process-wide throttle window."""

    active: bool = False
    until_ms: int = 0
    reason: str = ""

    def remaining_ms(self, now_ms: int) -> int:
        """Milliseconds left in the throttle window (0 if inactive or elapsed)."""
        if not self.active:
            return 0
        return max(0, self.until_ms - now_ms)

    def clear(self) -> None:
        """Deactivate the throttle."""
        self.active = False
        self.until_ms = 0
        self.reason = ""


@dataclass
class CacheEntry:
    """Cached response with absolute expiry."""

    key: str
    value: Any
    expires_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        """A read at or after expires_at_ms is a miss."""
        return now_ms >= self.expires_at_ms


@dataclass
class EndpointStats:
    """
    Per-endpoint limiter health.

    Attributes:
        endpoint: Endpoint path as recorded.
        requests_in_window: Dispatches in the trailing 60s window.
        requests_per_minute: Configured limit for this endpoint.
        requests_remaining: Headroom left in the window.
        burst_in_window: Dispatches in the trailing burst window.
        burst_limit: Configured burst cap.
        last_request_at_ms: Timestamp of the last recorded dispatch.
        window_reset_at_ms: When the oldest dispatch leaves the window.
    """

    endpoint: str
    requests_in_window: int
    requests_per_minute: int
    requests_remaining: int
    burst_in_window: int
    burst_limit: int
    last_request_at_ms: int
    window_reset_at_ms: int


@dataclass
class SchedulerStats:
    """Read-only snapshot of scheduler health."""

    queue_size: int = 0
    queued_by_priority: dict[str, int] = field(default_factory=dict)
    is_draining: bool = False
    is_throttled: bool = False
    throttle_remaining_ms: int = 0
    recent_global_request_count: int = 0
    cache_size: int = 0
    in_flight: int = 0
    total_dispatched: int = 0
    total_retried: int = 0
    total_throttled: int = 0
    total_rejected: int = 0
    total_cache_hits: int = 0
    total_deduplicated: int = 0
    per_endpoint_stats: list[EndpointStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for JSON serialization."""
        return asdict(self)


@dataclass
class SchedulerCounters:
    """Monotonic counters maintained by the scheduler."""

    dispatched: int = 0
    retried: int = 0
    throttled: int = 0
    rejected: int = 0
    cache_hits: int = 0
    deduplicated: int = 0
