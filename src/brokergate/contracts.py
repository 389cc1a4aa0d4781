"""
Data contracts for the operator control API.

These are the request/response schemas served by the control server.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field


class ControlAction(str, Enum):
    """Operator action on the scheduler."""

    CLEAR = "clear"
    THROTTLE = "throttle"
    STATS = "stats"


class SchedulerStatus(str, Enum):
    """Coarse scheduler status for dashboards."""

    THROTTLED = "throttled"
    PROCESSING = "processing"
    IDLE = "idle"


DEFAULT_OPERATOR_THROTTLE_MS = 10000


class ControlRequest(BaseModel):
    """
    Body of POST /rate-limiter.

    Attributes:
        action: clear, throttle or stats.
        duration_ms: Throttle duration (throttle only, default 10s).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: ControlAction = Field(..., description="Operator action")
    duration_ms: int | None = Field(
        default=None, gt=0, le=3_600_000, description="Throttle duration (ms)"
    )

    def effective_duration_ms(self) -> int:
        """Throttle duration with the default applied."""
        if self.duration_ms is None:
            return DEFAULT_OPERATOR_THROTTLE_MS
        return self.duration_ms


class ControlResponse(BaseModel):
    """Envelope returned by every control endpoint."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None
    timestamp: str = Field(
        default_factory=lambda: datetime.now(tz=UTC).isoformat(timespec="milliseconds")
    )

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json", exclude_none=True))
