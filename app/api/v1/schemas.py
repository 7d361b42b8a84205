from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, Field, NonNegativeInt


class AspectRatio(str, Enum):
    """Output canvas classes. Pixel sizes live in the compositor."""

    PORTRAIT = "4:5"
    STORY = "9:16"
    LANDSCAPE = "16:9"
    SQUARE = "1:1"


class Style(str, Enum):
    """Tone variant appended to the generation instruction."""

    NATURAL = "natural"
    BRIGHT = "bright"
    MOODY = "moody"


class UsageSnapshot(BaseModel):
    """Quota counters returned alongside generated images."""

    used: NonNegativeInt = Field(..., description="Generations used this month.")
    limit: NonNegativeInt = Field(..., description="Monthly generation limit.")
    remaining: NonNegativeInt = Field(..., description="Generations left this month.")


class GeneratedImage(BaseModel):
    mime: str = Field(default="image/jpeg", description="MIME type of the encoded image.")
    data: str = Field(..., description="Base64-encoded image bytes.")


class GenerateResponse(BaseModel):
    """Successful response for a generation request."""

    aspect: AspectRatio = Field(..., description="Aspect ratio the images were formatted to.")
    count: NonNegativeInt = Field(..., description="Number of images returned (always 4).")
    images: List[GeneratedImage] = Field(default_factory=list)
    usage: UsageSnapshot


class QuotaStatusResponse(UsageSnapshot):
    period_start: datetime = Field(
        ...,
        description="Start of the current quota period (UTC).",
    )


class ErrorBody(BaseModel):
    code: str = Field(..., description="Machine-readable error code, e.g. QUOTA_EXCEEDED.")
    message: str = Field(..., description="Human-readable explanation.")
    retryable: bool = Field(..., description="Whether the client may re-issue the request.")


class ErrorEnvelope(BaseModel):
    """Shape of every non-2xx response body."""

    error: ErrorBody
    quota: UsageSnapshot | None = Field(
        default=None,
        description="Usage snapshot, present only for QUOTA_EXCEEDED.",
    )


class CircuitStatusResponse(BaseModel):
    failures: NonNegativeInt
    is_open: bool
    threshold: NonNegativeInt
    open_duration: float
    retry_after: float


class HealthResponse(BaseModel):
    status: str = "ok"
    api_version: str = "v1"
    circuit_breaker: CircuitStatusResponse | None = None
