"""
Error taxonomy for the request scheduler.

Only terminal errors ever reach a caller's future:
- RateLimitExceededError: throttle-classified failure persisted past max_retries
- RetriesExhaustedError: generic failure persisted past max_retries
- QueueClearedError: request rejected by an operator clear or shutdown

Transient (retryable) failures stay inside the processor loop.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for terminal scheduler errors."""

    def __init__(self, message: str, endpoint: str = "", request_id: str = "") -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.request_id = request_id


class RateLimitExceededError(SchedulerError):
    """Raised when provider throttling recurs after max_retries attempts."""

    def __init__(
        self,
        message: str,
        endpoint: str = "",
        request_id: str = "",
        retry_count: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, endpoint=endpoint, request_id=request_id)
        self.retry_count = retry_count
        self.last_error = last_error


class RetriesExhaustedError(SchedulerError):
    """Raised when a generic failure recurs after max_retries attempts.

    The final operation error is kept on ``last_error`` and chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        endpoint: str = "",
        request_id: str = "",
        retry_count: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, endpoint=endpoint, request_id=request_id)
        self.retry_count = retry_count
        self.last_error = last_error


class QueueClearedError(SchedulerError):
    """Raised on every request removed by clear_queue() or close()."""


class BrokerageHTTPError(Exception):
    """Raised by operations for non-2xx brokerage responses.

    Carries what the scheduler needs for throttle classification:
    the HTTP status and the provider's Retry-After hint (already in ms).
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after_ms: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.body = body
