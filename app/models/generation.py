from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from app.api.v1.schemas import AspectRatio, Style


def utcnow() -> datetime:
    """Return an explicit, timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CircuitState:
    """
    Mutable failure counters owned by a single CircuitBreaker instance.

    Timestamps are readings of the breaker's clock (monotonic seconds by
    default), not wall-clock datetimes.
    """

    threshold: int = 5
    open_duration: float = 60.0
    consecutive_failures: int = 0
    last_failure_at: float = 0.0


@dataclass(slots=True, frozen=True)
class CircuitStatus:
    """Read-only snapshot of a breaker, suitable for health endpoints."""

    failures: int
    is_open: bool
    last_failure_at: float
    threshold: int
    open_duration: float
    # Seconds until the breaker accepts calls again; 0 when closed.
    retry_after: float = 0.0


@dataclass(slots=True)
class GenerationAttempt:
    """One pass of the retry loop. Only lives for the duration of the loop."""

    attempt_number: int
    images_returned: List[bytes] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class QuotaRecord:
    """
    Per-user usage counters for the current calendar month.

    `current_period_used <= monthly_limit` is a target enforced by the gate's
    conditional update, not by this record.
    """

    monthly_limit: int = 5
    current_period_used: int = 0
    period_start: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class QuotaStatus:
    limit: int
    used: int
    remaining: int
    period_start: datetime


@dataclass(slots=True, frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int


@dataclass(slots=True)
class GenerationRequest:
    """A validated-at-the-edge generation request, decoupled from HTTP."""

    image: bytes
    mime_type: str
    aspect: AspectRatio = AspectRatio.PORTRAIT
    style: Style = Style.NATURAL


@dataclass(slots=True)
class GenerationResult:
    aspect: AspectRatio
    images: List[bytes]
    usage: QuotaStatus

    @property
    def count(self) -> int:
        return len(self.images)
