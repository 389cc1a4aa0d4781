"""
Priority request queue.

Ordering: high > normal > low; equal priority preserves enqueue order.
Retries are pushed to the front so they are the very next thing dispatched
once a throttle or backoff clears.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import deque

from brokergate.scheduler.errors import QueueClearedError
from brokergate.scheduler.types import Priority, QueuedRequest

logger = logging.getLogger(__name__)


class PriorityRequestQueue:
    """
    Heap-backed priority queue with a front lane for retries.

    All mutation happens on the event loop thread, so push/pop/clear are
    atomic with respect to the processor loop.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[tuple[int, int, int], QueuedRequest]] = []
        self._front: deque[QueuedRequest] = deque()
        self._seq = itertools.count()

    def push(self, request: QueuedRequest) -> None:
        """Admit a request in priority/FIFO order. Visible to the next pop_next()."""
        request.seq = next(self._seq)
        heapq.heappush(self._heap, (request.sort_key(), request))

    def push_front(self, request: QueuedRequest) -> None:
        """Put a request back at the head of the queue, ahead of every tier."""
        self._front.appendleft(request)

    def pop_next(self) -> QueuedRequest | None:
        """Remove and return the next request, or None if empty."""
        if self._front:
            return self._front.popleft()
        if self._heap:
            return heapq.heappop(self._heap)[1]
        return None

    def promote(self, request: QueuedRequest, priority: Priority) -> bool:
        """
        Raise a queued request to a higher tier, keeping its enqueue order.

        Returns:
            True if the request was waiting in the heap and moved up.
        """
        if priority.rank >= request.priority.rank:
            return False
        for index, (_, queued) in enumerate(self._heap):
            if queued is request:
                request.priority = priority
                self._heap[index] = (request.sort_key(), request)
                heapq.heapify(self._heap)
                return True
        return False

    def clear(self, reason: str = "Request queue cleared") -> int:
        """
        Empty the queue, rejecting every removed request with QueueClearedError.

        Returns:
            Number of requests rejected.
        """
        removed = list(self._front) + [request for _, request in self._heap]
        self._front.clear()
        self._heap.clear()
        rejected = 0
        for request in removed:
            error = QueueClearedError(
                reason,
                endpoint=request.endpoint,
                request_id=request.id,
            )
            if request.reject(error):
                rejected += 1
        if removed:
            logger.warning(
                "Queue cleared",
                extra={"removed": len(removed), "rejected": rejected},
            )
        return rejected

    def counts_by_priority(self) -> dict[str, int]:
        """Pending requests per priority tier."""
        counts = {p.value: 0 for p in Priority}
        for request in self._front:
            counts[request.priority.value] += 1
        for _, request in self._heap:
            counts[request.priority.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._front) + len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._front) or bool(self._heap)
