"""
Error Taxonomy
==============
Every failure the editor can surface maps onto one of these.

- UserInputError        inline, non-fatal (blank text, non-image upload)
- RemovalError          background removal failed; pipeline goes to FAILED
- ResourceError         raster/canvas unavailable; swallowed by the pipeline
- HostIntegrationError  writing the composite out failed; state is kept
"""

from typing import Optional, Dict, Any
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from logging_setup import get_logger

logger = get_logger(__name__)


class TextBehindError(Exception):
    """Base exception for the editor."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "type": type(self).__name__,
                "message": self.message,
                "details": self.details,
            }
        }


class UserInputError(TextBehindError):
    """Raised when user input blocks an action (e.g. committing blank text)."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, code=400, **kwargs)
        if field:
            self.details["field"] = field


class RemovalError(TextBehindError):
    """Raised when the background-removal collaborator fails."""

    def __init__(self, message: str, reason: str = "internal", **kwargs):
        super().__init__(message, code=502, **kwargs)
        # network | unsupported_format | internal | timeout
        self.details["reason"] = reason


class ResourceError(TextBehindError):
    """Raised when a raster handle or drawing surface is unavailable."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class HostIntegrationError(TextBehindError):
    """Raised when the composite cannot be written to the host document."""

    def __init__(self, message: str, target: Optional[str] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        if target:
            self.details["target"] = target


class SessionNotFoundError(TextBehindError):
    """Raised for an unknown editor session id."""

    def __init__(self, session_id: str):
        super().__init__(f"Editor session not found: {session_id}", code=404)
        self.details["session_id"] = session_id


async def text_behind_exception_handler(request: Request, exc: TextBehindError) -> JSONResponse:
    """Render a TextBehindError as a JSON error body."""
    if exc.code >= 500:
        logger.error("request_failed", path=request.url.path, error_type=type(exc).__name__, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, error_type=type(exc).__name__, error=exc.message)
    return JSONResponse(status_code=exc.code, content=exc.to_dict())


def setup_exception_handlers(app: FastAPI):
    """Register the handlers on the app."""
    app.add_exception_handler(TextBehindError, text_behind_exception_handler)
