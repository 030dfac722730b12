# errors.py
"""Error types shared by the recognition pipeline, the catalog and the routes.

Each error knows the HTTP status it maps to and renders the JSON body the
frontend expects: ``{"error": ..., "message": ..., "suggestion": ...}``.
"""
from typing import Any, Dict, Optional

from starlette import status


class ArtCatalogError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        suggestion: Optional[str] = None,
        error: Optional[str] = None,
        **extra: Any,
    ) -> None:
        super().__init__(message or error or self.error)
        if error:
            self.error = error
        self.message = message
        self.suggestion = suggestion
        self.extra = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error}
        if self.message:
            payload["message"] = self.message
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        payload.update(self.extra)
        return payload


# --- Input validation (always user-correctable) ---


class InputValidationError(ArtCatalogError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Invalid input"


class MissingImage(InputValidationError):
    error = "No image file uploaded (field name: image)"


class UnsupportedMediaType(InputValidationError):
    error = "Unsupported image type. Use JPG, PNG, WEBP or GIF."


class PayloadTooLarge(InputValidationError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    error = "Image too large"


class ArtworkHasNoImage(InputValidationError):
    error = "Artwork has no image URL"


class ArtworkNotFound(ArtCatalogError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Artwork not found"


# --- Server side ---


class ConfigurationError(ArtCatalogError):
    error = "Missing OPENAI_API_KEY"


class UpstreamError(ArtCatalogError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "OpenAI request failed"


class MalformedResponseError(ArtCatalogError):
    """The model answered, but no JSON object could be extracted from its text."""

    status_code = status.HTTP_200_OK
    error = "Could not parse JSON from model response"

    def __init__(self, raw: str, failure: Optional[str] = None) -> None:
        super().__init__()
        self.raw = raw
        self.failure = failure

    def to_payload(self) -> Dict[str, Any]:
        return {"raw": self.raw, "error": self.error}


class ImageDecodeError(ArtCatalogError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Unable to decode image"


class StorageQuotaError(ArtCatalogError):
    error = "Session storage quota exceeded"


class CatalogReadError(ArtCatalogError):
    error = "Catalog file is unreadable"
