"""
Direct HTTP client for Google's Gemini image generation API.

Talks to the `generateContent` REST endpoint with `requests`. One call per
`generate()`, no retries; retries, backoff and circuit breaking live in the
generation orchestrator.
"""

import base64
import logging
from typing import Any, Dict, List, Optional, Protocol

import requests

from app.services.errors import AIGenerationFailed, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash-exp"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class AIBackend(Protocol):
    """Anything that can turn one source image and a prompt into images."""

    def generate(self, image: bytes, mime_type: str, prompt: str) -> List[bytes]:
        """
        Return zero or more encoded images. May return fewer than requested.

        Raises on transport or upstream failure.
        """
        ...


class GeminiClient:
    """
    Blocking Gemini client.

    Constructed once at startup and passed to the orchestrator; there is no
    module-level instance.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required to create the Gemini client.")

        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

        logger.info("Gemini client initialized (model: %s)", model)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _build_payload(self, image: bytes, mime_type: str, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(image).decode("utf-8"),
                            }
                        },
                        {"text": prompt},
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

    def generate(self, image: bytes, mime_type: str, prompt: str) -> List[bytes]:
        """
        Send one generateContent request and extract the returned images.

        Raises:
            requests.exceptions.RequestException: transport errors and non-2xx responses
            AIGenerationFailed: the response has no candidates or an empty image part
        """
        logger.info(
            "Calling Gemini API - model: %s, input: %d bytes (%s)",
            self.model,
            len(image),
            mime_type,
        )

        response = self.session.post(
            self.endpoint,
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
            json=self._build_payload(image, mime_type, prompt),
            timeout=self.timeout,
        )

        if response.status_code == 429:
            logger.warning("Gemini API rate limited (429)")
        elif response.status_code in (401, 403):
            logger.error("Gemini API rejected the API key (%d)", response.status_code)

        response.raise_for_status()

        images = self._extract_images(response.json())
        logger.info("Gemini returned %d images", len(images))
        return images

    @staticmethod
    def _extract_images(body: Dict[str, Any]) -> List[bytes]:
        candidates = body.get("candidates") or []
        if not candidates:
            raise AIGenerationFailed("AI generation failed: no candidates in response")

        parts = (candidates[0].get("content") or {}).get("parts") or []

        images: List[bytes] = []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if not inline:
                continue
            mime = inline.get("mimeType") or inline.get("mime_type") or ""
            if not mime.startswith("image/"):
                continue
            data = inline.get("data")
            if not data:
                raise AIGenerationFailed("AI generation failed: image part is missing data")
            images.append(base64.b64decode(data))
        return images
