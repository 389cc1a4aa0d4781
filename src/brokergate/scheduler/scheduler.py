"""
Request scheduler: the single gate between callers and the brokerage API.

Flow:
    schedule() -> cache (fast path) -> in-flight dedupe -> priority queue
    -> processor loop -> throttle gate -> rate gates -> operation
    -> cache write-back / caller resolution
    -> on failure: backoff -> front of queue (retry) or terminal rejection

Exactly one processor loop drains the queue at a time. Producers only touch
the queue and cache through schedule(); limiter and throttle state belong to
the loop. All of it lives on one event loop, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from brokergate.scheduler.backoff import (
    BackoffController,
    Failed,
    Success,
    Throttled,
    classify_failure,
)
from brokergate.scheduler.cache import ResponseCache
from brokergate.scheduler.config import SchedulerConfig
from brokergate.scheduler.errors import (
    QueueClearedError,
    RateLimitExceededError,
    RetriesExhaustedError,
)
from brokergate.scheduler.queue import PriorityRequestQueue
from brokergate.scheduler.rate_tracker import RateLimitTracker
from brokergate.scheduler.types import (
    Priority,
    QueuedRequest,
    SchedulerCounters,
    SchedulerStats,
    ThrottleState,
)

if TYPE_CHECKING:
    import concurrent.futures
    import random
    from collections.abc import Awaitable, Callable

    from brokergate.scheduler.backoff import Outcome

logger = logging.getLogger(__name__)


async def _default_sleep(ms: int) -> None:
    await asyncio.sleep(ms / 1000)


class RequestScheduler:
    """
    Priority-ordered, rate-limited dispatcher for brokerage API calls.

    Usage:
        scheduler = RequestScheduler()
        account = await scheduler.schedule(
            "/v2/account", client_call, Priority.HIGH, cache_key="account"
        )
        ...
        await scheduler.close()

    Rate gates: the loop waits for the maximum of the global, endpoint and
    burst waits, then re-checks all gates (and the throttle) before dispatch.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        *,
        rng: random.Random | None = None,
        _time_fn: Callable[[], int] | None = None,
        _sleep_fn: Callable[[int], Awaitable[None]] | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            config: Scheduler configuration (default policy values if None).
            rng: Optional seeded Random for deterministic throttle jitter.
            _time_fn: Time provider returning epoch ms (tests inject a fake clock).
            _sleep_fn: Async sleep taking ms (tests inject one that advances the clock).
        """
        self._config = config or SchedulerConfig()
        self._time_fn = _time_fn
        self._sleep = _sleep_fn or _default_sleep

        self._cache = ResponseCache(
            default_ttl_ms=self._config.default_cache_ttl_ms,
            sweep_interval_ms=self._config.cache_sweep_interval_ms,
            _time_fn=_time_fn,
        )
        self._tracker = RateLimitTracker(config=self._config, _time_fn=_time_fn)
        self._backoff = BackoffController(config=self._config, rng=rng)
        self._queue = PriorityRequestQueue()
        self._throttle = ThrottleState()

        self._drain_task: asyncio.Task[None] | None = None
        self._current: QueuedRequest | None = None  # Popped, awaiting gates or executing
        self._executing = False
        self._pending_by_key: dict[str, QueuedRequest] = {}
        self._ids = itertools.count(1)
        self._counters = SchedulerCounters()
        self._closed = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> SchedulerConfig:
        """Scheduler configuration."""
        return self._config

    @property
    def cache(self) -> ResponseCache:
        """Response cache."""
        return self._cache

    @property
    def tracker(self) -> RateLimitTracker:
        """Rate limit tracker."""
        return self._tracker

    @property
    def is_draining(self) -> bool:
        """True while a processor loop is active."""
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def is_closed(self) -> bool:
        """True after close()."""
        return self._closed

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # ------------------------------------------------------------------
    # Client facade
    # ------------------------------------------------------------------

    def schedule(
        self,
        endpoint: str,
        operation: Callable[[], Awaitable[Any]],
        priority: Priority | str = Priority.NORMAL,
        cache_key: str | None = None,
        cache_ttl_ms: int | None = None,
    ) -> asyncio.Future[Any]:
        """
        Submit one remote call.

        Must be called from the event loop thread; use schedule_threadsafe()
        from other threads.

        Args:
            endpoint: Endpoint path selecting the rate-limit policy.
            operation: Zero-arg coroutine function performing exactly one call.
            priority: high, normal or low.
            cache_key: Optional key; a live cached value is returned without
                dispatch, and a successful result is cached under it.
            cache_ttl_ms: TTL for the cached result (config default if None).

        Returns:
            Future resolving to the operation's result, or failing with one
            terminal SchedulerError.

        Raises:
            RuntimeError: If the scheduler has been closed.
            ValueError: If priority is not a known tier.
        """
        if self._closed:
            msg = "Scheduler is closed"
            raise RuntimeError(msg)

        loop = asyncio.get_running_loop()
        tier = Priority.coerce(priority)

        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if not ResponseCache.is_miss(cached):
                self._counters.cache_hits += 1
                logger.debug("Cache hit", extra={"endpoint": endpoint, "cache_key": cache_key})
                future: asyncio.Future[Any] = loop.create_future()
                future.set_result(cached)
                return future

            if self._config.inflight_dedupe:
                existing = self._pending_by_key.get(cache_key)
                if existing is not None and not existing.future.done():
                    self._counters.deduplicated += 1
                    self._queue.promote(existing, tier)
                    logger.debug(
                        "Joining in-flight request",
                        extra={"endpoint": endpoint, "request_id": existing.id},
                    )
                    return self._chain(existing.future)

        request = QueuedRequest(
            id=f"req-{next(self._ids)}-{uuid.uuid4().hex[:8]}",
            endpoint=endpoint,
            priority=tier,
            operation=operation,
            future=loop.create_future(),
            enqueued_at=self._now_ms(),
            cache_key=cache_key,
            cache_ttl_ms=cache_ttl_ms,
        )
        if cache_key is not None:
            self._pending_by_key[cache_key] = request

        self._queue.push(request)
        self._cache.start_sweeper()
        self._ensure_draining()
        return request.future

    def schedule_threadsafe(
        self,
        loop: asyncio.AbstractEventLoop,
        endpoint: str,
        operation: Callable[[], Awaitable[Any]],
        priority: Priority | str = Priority.NORMAL,
        cache_key: str | None = None,
        cache_ttl_ms: int | None = None,
    ) -> concurrent.futures.Future[Any]:
        """Submit from a non-loop thread. Returns a concurrent.futures.Future."""

        async def _submit() -> Any:
            return await self.schedule(endpoint, operation, priority, cache_key, cache_ttl_ms)

        return asyncio.run_coroutine_threadsafe(_submit(), loop)

    def _chain(self, source: asyncio.Future[Any]) -> asyncio.Future[Any]:
        """New future mirroring source, so one caller's cancel cannot affect another."""
        target: asyncio.Future[Any] = source.get_loop().create_future()

        def _copy(done: asyncio.Future[Any]) -> None:
            if target.done():
                return
            if done.cancelled():
                target.cancel()
            elif done.exception() is not None:
                target.set_exception(done.exception())  # type: ignore[arg-type]
            else:
                target.set_result(done.result())

        source.add_done_callback(_copy)
        return target

    def _forget(self, request: QueuedRequest) -> None:
        """Drop a finished request from the in-flight dedupe index."""
        if request.cache_key is not None and self._pending_by_key.get(request.cache_key) is request:
            del self._pending_by_key[request.cache_key]

    # ------------------------------------------------------------------
    # Processor loop
    # ------------------------------------------------------------------

    def _ensure_draining(self) -> None:
        """Idle -> Draining: start the single processor loop if none is active."""
        if self.is_draining:
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        """Consume the queue until empty (Draining -> Idle)."""
        logger.debug("Processor loop started", extra={"queue_size": len(self._queue)})
        try:
            while True:
                await self._wait_for_throttle()

                request = self._queue.pop_next()
                if request is None:
                    break
                if request.future.done():
                    # Cancelled by its caller while queued
                    self._forget(request)
                    continue

                self._current = request
                await self._wait_for_clearance(request.endpoint)
                if request.future.done():
                    # Rejected by clear_queue() while waiting at the gates
                    self._forget(request)
                    self._current = None
                    continue

                await self._dispatch(request)
                self._current = None
        except asyncio.CancelledError:
            if self._current is not None:
                self._current.reject(
                    QueueClearedError(
                        "Scheduler stopped",
                        endpoint=self._current.endpoint,
                        request_id=self._current.id,
                    )
                )
                self._forget(self._current)
            raise
        finally:
            self._current = None
            self._executing = False
            logger.debug("Processor loop idle")

    async def _wait_for_throttle(self) -> None:
        """Sleep out an active throttle window, then clear it."""
        while self._throttle.active:
            remaining = self._throttle.remaining_ms(self._now_ms())
            if remaining <= 0:
                logger.info("Throttle cleared", extra={"reason": self._throttle.reason})
                self._throttle.clear()
                return
            await self._sleep(remaining)

    async def _wait_for_clearance(self, endpoint: str) -> None:
        """Block until neither the throttle nor any rate gate forbids dispatch."""
        while True:
            if self._throttle.active:
                await self._wait_for_throttle()
                continue
            wait_ms = self._tracker.wait_time_for(endpoint)
            if wait_ms <= 0:
                return
            logger.debug(
                "Rate limit wait",
                extra={"endpoint": endpoint, "wait_ms": wait_ms},
            )
            await self._sleep(wait_ms)

    async def _dispatch(self, request: QueuedRequest) -> None:
        """Execute one attempt and resolve, retry or reject."""
        started_ms = self._now_ms()
        self._executing = True
        try:
            outcome: Outcome = Success(await request.operation())
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # The operation cancelled itself: cancel this request, keep draining
            request.future.cancel()
            self._forget(request)
            return
        except Exception as e:
            outcome = classify_failure(e)
        finally:
            self._executing = False

        # Every attempt that reached the provider counts against its quota
        self._tracker.record(request.endpoint, started_ms)
        self._counters.dispatched += 1

        if isinstance(outcome, Success):
            await self._on_success(request, outcome.value)
        elif isinstance(outcome, Throttled):
            self._on_throttled(request, outcome)
        elif isinstance(outcome, Failed):
            await self._on_failed(request, outcome)

    async def _on_success(self, request: QueuedRequest, value: Any) -> None:
        if request.cache_key is not None:
            self._cache.set(request.cache_key, value, request.cache_ttl_ms)
        request.resolve(value)
        self._forget(request)
        if self._config.inter_request_delay_ms > 0:
            await self._sleep(self._config.inter_request_delay_ms)

    def _on_throttled(self, request: QueuedRequest, outcome: Throttled) -> None:
        policy = self._config.policy_for(request.endpoint)
        delay_ms = self._backoff.delay_for_throttle(
            request.retry_count, outcome.retry_after_ms, policy
        )
        self._activate_throttle(delay_ms, reason=f"provider throttle on {request.endpoint}")
        self._counters.throttled += 1
        logger.warning(
            "Provider throttling detected",
            extra={
                "endpoint": request.endpoint,
                "request_id": request.id,
                "retry_count": request.retry_count,
                "throttle_ms": delay_ms,
                "retry_after_ms": outcome.retry_after_ms,
                "error": str(outcome.error),
            },
        )

        if request.retry_count < policy.max_retries:
            request.retry_count += 1
            self._counters.retried += 1
            self._queue.push_front(request)
            return

        error = RateLimitExceededError(
            f"Rate limit exceeded after {request.retry_count} retries",
            endpoint=request.endpoint,
            request_id=request.id,
            retry_count=request.retry_count,
            last_error=outcome.error,
        )
        error.__cause__ = outcome.error
        self._reject(request, error)

    async def _on_failed(self, request: QueuedRequest, outcome: Failed) -> None:
        policy = self._config.policy_for(request.endpoint)
        if request.retry_count < policy.max_retries:
            request.retry_count += 1
            self._counters.retried += 1
            delay_ms = self._backoff.delay_for_retry(request.retry_count, policy)
            logger.warning(
                "Request failed, retrying",
                extra={
                    "endpoint": request.endpoint,
                    "request_id": request.id,
                    "retry_count": request.retry_count,
                    "delay_ms": delay_ms,
                    "error": str(outcome.error),
                },
            )
            self._queue.push_front(request)
            if delay_ms > 0:
                await self._sleep(delay_ms)
            return

        error = RetriesExhaustedError(
            f"Request failed after {request.retry_count} retries: {outcome.error}",
            endpoint=request.endpoint,
            request_id=request.id,
            retry_count=request.retry_count,
            last_error=outcome.error,
        )
        error.__cause__ = outcome.error
        self._reject(request, error)

    def _reject(self, request: QueuedRequest, error: Exception) -> None:
        self._counters.rejected += 1
        logger.error(
            "Request rejected",
            extra={
                "endpoint": request.endpoint,
                "request_id": request.id,
                "retry_count": request.retry_count,
                "error_type": type(error).__name__,
            },
        )
        request.reject(error)
        self._forget(request)

    def _activate_throttle(self, duration_ms: int, reason: str) -> None:
        """Start (or extend) the process-wide throttle window."""
        until_ms = self._now_ms() + max(0, duration_ms)
        if self._throttle.active and self._throttle.until_ms >= until_ms:
            return
        self._throttle.active = True
        self._throttle.until_ms = until_ms
        self._throttle.reason = reason

    # ------------------------------------------------------------------
    # Operational controls
    # ------------------------------------------------------------------

    def clear_queue(self, reason: str = "Request queue cleared by operator") -> int:
        """
        Reject every pending request with QueueClearedError.

        Includes a request that has been popped but is still waiting at the
        throttle or rate gates. A request whose operation is already executing
        is left to finish.

        Returns:
            Number of requests rejected.
        """
        rejected = self._queue.clear(reason)
        current = self._current
        if current is not None and not self._executing:
            error = QueueClearedError(reason, endpoint=current.endpoint, request_id=current.id)
            if current.reject(error):
                rejected += 1
        for request in list(self._pending_by_key.values()):
            if request.future.done():
                self._forget(request)
        return rejected

    def throttle(self, duration_ms: int) -> None:
        """Force a throttle window (drills, incident response)."""
        if duration_ms < 0:
            msg = f"duration_ms must be >= 0, got {duration_ms}"
            raise ValueError(msg)
        self._activate_throttle(duration_ms, reason="operator")
        logger.warning("Operator throttle", extra={"duration_ms": duration_ms})

    def get_stats(self) -> SchedulerStats:
        """Read-only snapshot of limiter health."""
        now_ms = self._now_ms()
        remaining = self._throttle.remaining_ms(now_ms)
        return SchedulerStats(
            queue_size=len(self._queue),
            queued_by_priority=self._queue.counts_by_priority(),
            is_draining=self.is_draining,
            is_throttled=remaining > 0,
            throttle_remaining_ms=remaining,
            recent_global_request_count=self._tracker.global_count(),
            cache_size=len(self._cache),
            in_flight=1 if self._executing else 0,
            total_dispatched=self._counters.dispatched,
            total_retried=self._counters.retried,
            total_throttled=self._counters.throttled,
            total_rejected=self._counters.rejected,
            total_cache_hits=self._counters.cache_hits,
            total_deduplicated=self._counters.deduplicated,
            per_endpoint_stats=self._tracker.all_endpoint_status(),
        )

    async def join(self) -> None:
        """Wait until the processor loop goes idle."""
        while self.is_draining:
            assert self._drain_task is not None  # Type narrowing
            await asyncio.shield(self._drain_task)

    async def close(self) -> None:
        """
        Stop the scheduler.

        Rejects everything outstanding with QueueClearedError, cancels the
        processor loop and the cache sweeper. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self._queue.clear("Scheduler closed")
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
        self._pending_by_key.clear()
        await self._cache.stop_sweeper()
        self._cache.clear()
        logger.info("Scheduler closed")
