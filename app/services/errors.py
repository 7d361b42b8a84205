"""
Error taxonomy for the dish restyle API.

Every failure a client can observe maps to one of these classes. Each class
carries the machine-readable `code`, the HTTP status it is rendered with and
whether a client may safely re-issue the request.
"""

from __future__ import annotations

from typing import Any, Dict


class DishApiError(Exception):
    """Base class for all errors rendered through the error envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = True
    default_message = "An internal server error occurred."

    def __init__(self, message: str | None = None, details: Dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_envelope(self) -> Dict[str, Any]:
        """Render the `{error: {code, message, retryable}}` wire envelope."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
            }
        }

    def __repr__(self) -> str:
        details = f", details={self.details}" if self.details else ""
        return f"{self.__class__.__name__}(message={self.message!r}{details})"


class ConfigurationError(DishApiError):
    """Raised when the service is started with unusable settings."""

    default_message = "Service is misconfigured."


class ValidationFailed(DishApiError):
    """Malformed, oversized, undersized or unsupported input. Never retried."""

    code = "INVALID_IMAGE"
    status_code = 400
    retryable = False
    default_message = "The uploaded image is missing or invalid."


class InvalidImage(ValidationFailed):
    pass


class InvalidAspect(ValidationFailed):
    code = "INVALID_ASPECT"
    default_message = "Unsupported aspect ratio. Use one of 4:5, 9:16, 16:9, 1:1."


class InvalidStyle(ValidationFailed):
    code = "INVALID_STYLE"
    default_message = "Unsupported style. Use one of natural, bright, moody."


class InvalidImageFormat(ValidationFailed):
    code = "INVALID_IMAGE_FORMAT"
    default_message = "Invalid image format. Only JPEG and PNG are accepted."


class ImageTooSmall(ValidationFailed):
    code = "IMAGE_TOO_SMALL"
    default_message = "Image is too small. Minimum resolution is 640x480."


class FileTooLarge(ValidationFailed):
    code = "FILE_TOO_LARGE"
    status_code = 413
    default_message = "Image file is too large. Maximum size is 10 MiB."


class Unauthorized(DishApiError):
    code = "UNAUTHORIZED"
    status_code = 401
    retryable = False
    default_message = "Missing or invalid bearer token."


class QuotaExceeded(DishApiError):
    """Admission denied for the current calendar month."""

    code = "QUOTA_EXCEEDED"
    status_code = 402
    retryable = False
    default_message = "Monthly generation limit reached."

    def __init__(self, used: int, limit: int, remaining: int, message: str | None = None) -> None:
        super().__init__(message, details={"used": used, "limit": limit, "remaining": remaining})
        self.used = used
        self.limit = limit
        self.remaining = remaining

    def to_envelope(self) -> Dict[str, Any]:
        envelope = super().to_envelope()
        envelope["quota"] = {"used": self.used, "limit": self.limit, "remaining": self.remaining}
        return envelope


class ServiceUnavailable(DishApiError):
    """The circuit breaker is open; the upstream call was not attempted."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Service temporarily unavailable. Please try again shortly."


class AIGenerationFailed(DishApiError):
    """Retries exhausted, or the upstream response was malformed."""

    code = "AI_GENERATION_FAILED"
    status_code = 502
    retryable = True
    default_message = "AI image generation failed. Please try again."

    def __init__(
        self,
        message: str | None = None,
        obtained: int | None = None,
        attempts: int | None = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if obtained is not None:
            details["obtained"] = obtained
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__(message, details=details)
        self.obtained = obtained
        self.attempts = attempts


class ImageProcessingError(DishApiError):
    """A generated image could not be decoded or composited."""

    default_message = "Image processing failed."
