"""
Short-lived response cache.

Suppresses duplicate dispatch for rapidly repeated reads (dashboard hooks
polling account/positions). Entries expire by absolute timestamp; a periodic
sweep bounds memory.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from brokergate.scheduler.types import CacheEntry

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_MISS = object()


@dataclass
class ResponseCache:
    """
    TTL cache keyed by opaque request keys.

    get() after expiry is a miss and removes the entry. sweep() removes every
    expired entry; start_sweeper() runs it periodically on the event loop.
    """

    default_ttl_ms: int = 5000
    sweep_interval_ms: int = 60000

    _entries: dict[str, CacheEntry] = field(default_factory=dict, init=False)
    _sweeper: asyncio.Task[None] | None = field(default=None, init=False)

    # Time provider for deterministic testing
    _time_fn: Callable[[], int] | None = field(default=None)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def get(self, key: str, default: Any = _MISS) -> Any:
        """
        Look up a live entry.

        Args:
            key: Cache key.
            default: Returned on miss. If omitted, a sentinel is returned that
                callers test with ``is_miss()``.

        Returns:
            Cached value, or default on miss.
        """
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.is_expired(self._now_ms()):
            del self._entries[key]
            return default
        return entry.value

    @staticmethod
    def is_miss(value: Any) -> bool:
        """Check whether get() returned the miss sentinel."""
        return value is _MISS

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        """Store value for ttl_ms (default_ttl_ms when None)."""
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if ttl <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at_ms=self._now_ms() + ttl,
        )

    def invalidate(self, key: str) -> None:
        """Drop a single entry."""
        self._entries.pop(key, None)

    def sweep(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now_ms = self._now_ms()
        expired = [k for k, e in self._entries.items() if e.is_expired(now_ms)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept expired cache entries", extra={"removed": len(expired)})
        return len(expired)

    def clear(self) -> None:
        """Remove all entries."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def start_sweeper(self) -> None:
        """Start the periodic sweep task on the running loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_ms / 1000)
            self.sweep()
