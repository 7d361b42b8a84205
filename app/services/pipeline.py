"""
Request pipeline for one generation request.

Stages run strictly in order:

    validate -> quota admission -> generate -> composite (fan-out) -> consume quota -> log usage

Validation failures short-circuit before any quota or AI work. Quota is only
consumed once four formatted images exist, and consumption is an atomic
conditional update so concurrent requests cannot overrun the limit.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from app.models.generation import GenerationRequest, GenerationResult
from app.services import compositor
from app.services.errors import InvalidImageFormat, QuotaExceeded
from app.services.generation import GenerationOrchestrator
from app.services.quota import QuotaGate
from app.services.usage_log import UsageLogger

logger = logging.getLogger(__name__)

ACCEPTED_MIME_TYPES = ("image/jpeg", "image/png")


class RequestPipeline:
    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        quota_gate: QuotaGate,
        usage_logger: Optional[UsageLogger] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._quota = quota_gate
        self._usage_logger = usage_logger

    async def run(self, user_id: str, request: GenerationRequest) -> GenerationResult:
        if request.mime_type not in ACCEPTED_MIME_TYPES:
            raise InvalidImageFormat()
        await asyncio.to_thread(compositor.validate_image, request.image)

        status = await asyncio.to_thread(self._quota.get_status, user_id)
        if status.remaining <= 0:
            raise QuotaExceeded(used=status.used, limit=status.limit, remaining=status.remaining)

        logger.info(
            "User %s: generating images (aspect: %s, style: %s)",
            user_id,
            request.aspect.value,
            request.style.value,
        )

        generated = await self._orchestrator.generate_set(
            request.image,
            request.mime_type,
            request.style,
        )

        logger.info("Formatting %d images to %s", len(generated), request.aspect.value)
        formatted = await compositor.format_all(generated, request.aspect)

        consumed, usage = await asyncio.to_thread(self._quota.try_consume, user_id)
        if not consumed:
            # A concurrent request from the same user took the last slot.
            raise QuotaExceeded(used=usage.used, limit=usage.limit, remaining=usage.remaining)

        await self._log_usage(user_id, request, formatted)

        return GenerationResult(aspect=request.aspect, images=formatted, usage=usage)

    async def _log_usage(self, user_id: str, request: GenerationRequest, images: list) -> None:
        if self._usage_logger is None:
            return
        try:
            await asyncio.to_thread(
                self._usage_logger.record,
                user_id,
                request.aspect.value,
                len(images),
                images,
            )
        except Exception:
            logger.exception("Failed to log generation for user %s", user_id)
