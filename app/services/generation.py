"""
Generation orchestrator: turns one dish photo into exactly N variants.

The backend may legitimately return fewer images than asked for, so the
orchestrator keeps calling it, accumulating partial results, until it has
`target_count` images or runs out of attempts. Delays between attempts grow
linearly (`attempt * base_delay`).

The whole retry loop runs inside a single CircuitBreaker.execute call. The
breaker therefore sees one outcome per user request, however many backend
calls the loop made internally.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from app.api.v1.schemas import Style
from app.models.generation import GenerationAttempt
from app.services.circuit_breaker import CircuitBreaker
from app.services.errors import AIGenerationFailed, DishApiError
from app.services.gemini_client import AIBackend

logger = logging.getLogger(__name__)

TARGET_IMAGE_COUNT = 4
MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0

BASE_PROMPT = """Using this dish photo as the base, create 4 variations that make the food look more appetizing without changing the dish itself.

Requirements:
- Keep the shape of the food and the plating exactly as they are (do not turn it into a different dish)
- Improve the lighting (natural light or a soft top light)
- Enhance sheen and texture (the depth of oil, sauce and moisture)
- Keep the background uncluttered so the dish is the hero
- Do not add any text or logos
- Finish it as a realistic, photographic image"""

STYLE_MODIFIERS = {
    Style.NATURAL: "Use natural colors and soft light for a warm, inviting mood.",
    Style.BRIGHT: "Use bright, vivid colors for a lively, energetic impression.",
    Style.MOODY: "Use a calm tone with delicate shadows for an upscale, refined mood.",
}


def build_prompt(style: Style | str) -> str:
    """Render the generation instruction for a style."""
    modifier = STYLE_MODIFIERS[Style(style)]
    return f"{BASE_PROMPT}\n\nStyle: {modifier}"


class GenerationOrchestrator:
    """
    Bounded, backing-off retry loop around an AIBackend, guarded by a breaker.

    Backend calls are blocking and run in a worker thread. `sleep` is
    injectable so tests can observe backoff without waiting.
    """

    def __init__(
        self,
        backend: AIBackend,
        circuit_breaker: CircuitBreaker,
        base_delay: float = BASE_DELAY_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._backend = backend
        self._breaker = circuit_breaker
        self._base_delay = base_delay
        self._max_attempts = max_attempts
        self._sleep = sleep or asyncio.sleep

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    async def generate_set(
        self,
        source_image: bytes,
        mime_type: str,
        style: Style | str = Style.NATURAL,
        target_count: int = TARGET_IMAGE_COUNT,
        max_attempts: Optional[int] = None,
    ) -> List[bytes]:
        """
        Return exactly `target_count` generated images.

        Raises:
            ServiceUnavailable: the circuit breaker is open
            AIGenerationFailed: attempts exhausted with too few images, or the
                final attempt failed (the backend error is chained as __cause__)
        """
        prompt = build_prompt(style)
        if max_attempts is None:
            max_attempts = self._max_attempts

        async def run_attempts() -> List[bytes]:
            return await self._run_attempts(
                source_image, mime_type, prompt, target_count, max_attempts
            )

        try:
            return await self._breaker.execute(run_attempts)
        except DishApiError:
            raise
        except Exception as exc:
            # Backend error on the final attempt; the breaker has recorded it.
            raise AIGenerationFailed(
                f"AI generation failed after {max_attempts} attempts: {exc}",
                attempts=max_attempts,
            ) from exc

    async def _run_attempts(
        self,
        source_image: bytes,
        mime_type: str,
        prompt: str,
        target_count: int,
        max_attempts: int,
    ) -> List[bytes]:
        accumulated: List[bytes] = []
        attempts: List[GenerationAttempt] = []

        while len(accumulated) < target_count and len(attempts) < max_attempts:
            attempt = GenerationAttempt(attempt_number=len(attempts) + 1)
            attempts.append(attempt)
            logger.info("Generation attempt %d/%d", attempt.attempt_number, max_attempts)

            try:
                attempt.images_returned = await asyncio.to_thread(
                    self._backend.generate, source_image, mime_type, prompt
                )
            except Exception as exc:
                attempt.error = str(exc)
                logger.error("Attempt %d failed: %s", attempt.attempt_number, exc)
                if attempt.attempt_number >= max_attempts:
                    raise
                await self._backoff(attempt.attempt_number)
                continue

            accumulated.extend(attempt.images_returned)

            if len(accumulated) >= target_count:
                logger.info(
                    "Generated %d images on attempt %d",
                    target_count,
                    attempt.attempt_number,
                )
                return accumulated[:target_count]

            logger.warning(
                "Only %d/%d images so far, retrying",
                len(accumulated),
                target_count,
            )
            if attempt.attempt_number < max_attempts:
                await self._backoff(attempt.attempt_number)

        raise AIGenerationFailed(
            f"AI generation failed: only got {len(accumulated)} images "
            f"after {len(attempts)} attempts",
            obtained=len(accumulated),
            attempts=len(attempts),
        )

    async def _backoff(self, attempt_number: int) -> None:
        delay = attempt_number * self._base_delay
        logger.info("Waiting %.1fs before retry", delay)
        await self._sleep(delay)
