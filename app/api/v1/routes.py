import asyncio
import base64

from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile

from app.api.v1.schemas import (
    AspectRatio,
    CircuitStatusResponse,
    ErrorEnvelope,
    GenerateResponse,
    GeneratedImage,
    HealthResponse,
    QuotaStatusResponse,
    Style,
    UsageSnapshot,
)
from app.models.generation import GenerationRequest
from app.services.auth import extract_bearer_token
from app.services.compositor import MAX_UPLOAD_BYTES
from app.services.container import Services
from app.services.errors import InvalidAspect, InvalidImage, InvalidStyle

router = APIRouter(prefix="/api/v1")

ERROR_RESPONSES = {
    400: {"model": ErrorEnvelope, "description": "Invalid image, aspect or style."},
    401: {"model": ErrorEnvelope, "description": "Missing or invalid bearer token."},
    402: {"model": ErrorEnvelope, "description": "Monthly quota exceeded."},
    413: {"model": ErrorEnvelope, "description": "Image larger than 10 MiB."},
    502: {"model": ErrorEnvelope, "description": "AI generation failed after retries."},
    503: {"model": ErrorEnvelope, "description": "Circuit breaker open."},
}


def get_services(request: Request) -> Services:
    """Return the services container built by the application factory."""
    return request.app.state.services


def get_current_user(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> str:
    """Resolve the caller's user id from the bearer token."""
    token = extract_bearer_token(authorization)
    return services.auth.verify(token)


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    """API v1 health check, including the AI backend circuit breaker state."""
    status = services.circuit_breaker.status()
    return HealthResponse(
        circuit_breaker=CircuitStatusResponse(
            failures=status.failures,
            is_open=status.is_open,
            threshold=status.threshold,
            open_duration=status.open_duration,
            retry_after=round(status.retry_after, 1),
        )
    )


@router.post(
    "/generate",
    response_model=GenerateResponse,
    responses=ERROR_RESPONSES,
    tags=["generation"],
    summary="Generate four restyled variants of a dish photo",
)
async def generate(
    image: UploadFile | None = File(default=None, description="Source photo (JPEG or PNG, max 10 MiB)."),
    aspect: str = Form(default=AspectRatio.PORTRAIT.value, description="One of 4:5, 9:16, 16:9, 1:1."),
    style: str = Form(default=Style.NATURAL.value, description="One of natural, bright, moody."),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> GenerateResponse:
    """
    Generate four AI-restyled versions of the uploaded photo.

    The client sends multipart/form-data with:
    - `image`: the source photo, at least 640x480.
    - `aspect`: output aspect ratio (default `4:5`).
    - `style`: tone variant (default `natural`).

    One successful call consumes one generation from the monthly quota.
    Failed calls consume nothing.
    """
    if image is None:
        raise InvalidImage("No image file was provided.")

    try:
        aspect_ratio = AspectRatio(aspect)
    except ValueError as exc:
        raise InvalidAspect() from exc

    try:
        style_option = Style(style)
    except ValueError as exc:
        raise InvalidStyle() from exc

    # Reading one byte past the limit is enough for validation to reject it.
    contents = await image.read(MAX_UPLOAD_BYTES + 1)
    if not contents:
        raise InvalidImage("The uploaded image is empty.")

    result = await services.pipeline.run(
        user_id,
        GenerationRequest(
            image=contents,
            mime_type=image.content_type or "",
            aspect=aspect_ratio,
            style=style_option,
        ),
    )

    return GenerateResponse(
        aspect=result.aspect,
        count=result.count,
        images=[
            GeneratedImage(mime="image/jpeg", data=base64.b64encode(data).decode("ascii"))
            for data in result.images
        ],
        usage=UsageSnapshot(
            used=result.usage.used,
            limit=result.usage.limit,
            remaining=result.usage.remaining,
        ),
    )


@router.get(
    "/quota",
    response_model=QuotaStatusResponse,
    responses={401: ERROR_RESPONSES[401]},
    tags=["quota"],
    summary="Get the caller's usage for the current month",
)
async def get_quota(
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> QuotaStatusResponse:
    """Return the caller's limit, usage and remaining generations."""
    status = await asyncio.to_thread(services.quota_gate.get_status, user_id)
    return QuotaStatusResponse(
        used=status.used,
        limit=status.limit,
        remaining=status.remaining,
        period_start=status.period_start,
    )
