"""Rate-limited request scheduling for brokerage APIs.

Priority queue, sliding-window rate tracking, throttle backoff, response
cache and the processor loop that ties them together.
"""

from brokergate.scheduler.backoff import (
    BackoffController,
    Failed,
    Success,
    Throttled,
    classify_failure,
    is_throttle_error,
)
from brokergate.scheduler.cache import ResponseCache
from brokergate.scheduler.config import RateLimitConfig, SchedulerConfig
from brokergate.scheduler.errors import (
    BrokerageHTTPError,
    QueueClearedError,
    RateLimitExceededError,
    RetriesExhaustedError,
    SchedulerError,
)
from brokergate.scheduler.queue import PriorityRequestQueue
from brokergate.scheduler.rate_tracker import RateLimitTracker
from brokergate.scheduler.scheduler import RequestScheduler
from brokergate.scheduler.types import (
    EndpointStats,
    Priority,
    QueuedRequest,
    SchedulerStats,
    ThrottleState,
)

__all__ = [
    "BackoffController",
    "BrokerageHTTPError",
    "EndpointStats",
    "Failed",
    "Priority",
    "PriorityRequestQueue",
    "QueueClearedError",
    "QueuedRequest",
    "RateLimitConfig",
    "RateLimitExceededError",
    "RateLimitTracker",
    "RequestScheduler",
    "ResponseCache",
    "RetriesExhaustedError",
    "SchedulerConfig",
    "SchedulerError",
    "SchedulerStats",
    "Success",
    "ThrottleState",
    "Throttled",
    "classify_failure",
    "is_throttle_error",
]
