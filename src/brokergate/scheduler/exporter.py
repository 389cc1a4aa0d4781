"""
Prometheus metrics exporter for the request scheduler.

Exports low-cardinality metrics only. No endpoint, request id or cache key
labels: per-endpoint detail is served as JSON by the control server instead.

Metric prefix: brokergate_sched_*
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from brokergate.scheduler.types import SchedulerStats


class SchedulerMetricsExporter:
    """
    Sync SchedulerStats snapshots into Prometheus gauges and counters.

    Usage:
        exporter = SchedulerMetricsExporter()
        exporter.update(scheduler.get_stats())
        # generate_latest(exporter.registry) -> bytes for /metrics
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._queue_size = Gauge(
            "brokergate_sched_queue_size",
            "Requests waiting in the priority queue",
            registry=self._registry,
        )
        self._draining = Gauge(
            "brokergate_sched_draining",
            "1 while the processor loop is active",
            registry=self._registry,
        )
        self._throttled = Gauge(
            "brokergate_sched_throttled",
            "1 while the process-wide throttle is active",
            registry=self._registry,
        )
        self._throttle_remaining_ms = Gauge(
            "brokergate_sched_throttle_remaining_ms",
            "Milliseconds left in the current throttle window",
            registry=self._registry,
        )
        self._global_window_count = Gauge(
            "brokergate_sched_global_window_requests",
            "Dispatches in the trailing 60s global window",
            registry=self._registry,
        )
        self._cache_size = Gauge(
            "brokergate_sched_cache_size",
            "Entries in the response cache",
            registry=self._registry,
        )

        self._dispatched = Counter(
            "brokergate_sched_dispatched",
            "Total dispatch attempts sent to the provider",
            registry=self._registry,
        )
        self._retried = Counter(
            "brokergate_sched_retried",
            "Total retries (throttle and generic)",
            registry=self._registry,
        )
        self._throttle_events = Counter(
            "brokergate_sched_throttle_events",
            "Total provider throttle detections",
            registry=self._registry,
        )
        self._rejected = Counter(
            "brokergate_sched_rejected",
            "Total terminal rejections after exhausted retries",
            registry=self._registry,
        )
        self._cache_hits = Counter(
            "brokergate_sched_cache_hits",
            "Total requests served from the response cache",
            registry=self._registry,
        )
        self._deduplicated = Counter(
            "brokergate_sched_deduplicated",
            "Total requests joined to an identical in-flight request",
            registry=self._registry,
        )

        # Last seen totals (counters are monotonic, we add deltas)
        self._last: dict[str, int] = {
            "dispatched": 0,
            "retried": 0,
            "throttled": 0,
            "rejected": 0,
            "cache_hits": 0,
            "deduplicated": 0,
        }

    @property
    def registry(self) -> CollectorRegistry:
        """Get the Prometheus CollectorRegistry."""
        return self._registry

    def _inc(self, counter: Counter, name: str, total: int) -> None:
        delta = total - self._last[name]
        if delta > 0:
            counter.inc(delta)
        self._last[name] = max(self._last[name], total)

    def update(self, stats: SchedulerStats) -> None:
        """Update all metrics from a stats snapshot."""
        self._queue_size.set(stats.queue_size)
        self._draining.set(1 if stats.is_draining else 0)
        self._throttled.set(1 if stats.is_throttled else 0)
        self._throttle_remaining_ms.set(stats.throttle_remaining_ms)
        self._global_window_count.set(stats.recent_global_request_count)
        self._cache_size.set(stats.cache_size)

        self._inc(self._dispatched, "dispatched", stats.total_dispatched)
        self._inc(self._retried, "retried", stats.total_retried)
        self._inc(self._throttle_events, "throttled", stats.total_throttled)
        self._inc(self._rejected, "rejected", stats.total_rejected)
        self._inc(self._cache_hits, "cache_hits", stats.total_cache_hits)
        self._inc(self._deduplicated, "deduplicated", stats.total_deduplicated)
