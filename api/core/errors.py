"""
API error types and the handlers that render them as JSON envelopes.

Every failure the API reports uses the same body shape:

    {"success": false, "error": "<summary>", "details": "<optional>"}
"""
import logging
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base class for errors that map directly to an HTTP response."""

    status_code = 500

    def __init__(
        self,
        error: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(error)
        self.error = error
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(ApiError):
    """Required server-side configuration (API keys, list IDs) is missing."""

    status_code = 500


class InvalidRequestError(ApiError):
    """The client sent a body we cannot act on."""

    status_code = 400


class UpstreamServiceError(ApiError):
    """A third-party API (Gemini, Klaviyo) failed."""

    status_code = 500


class RateLimitExceeded(ApiError):
    status_code = 429

    def __init__(self, headers: Dict[str, str]):
        super().__init__("Too many requests", headers=headers)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error} ({exc.details})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


def register_error_handlers(app: FastAPI) -> None:
    """Attach the JSON error envelope to an application."""
    app.add_exception_handler(ApiError, api_error_handler)
