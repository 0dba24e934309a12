"""
Global Exception Handling

Provides the pipeline's exception taxonomy and structured error responses.

Fatal stage errors never reach an HTTP caller directly: the runner folds them
into the record's failed status. Only ingestion and retry raise synchronously.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, image_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class WardrobeBaseException(Exception):
    """Base exception for the wardrobe image pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        image_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.image_id = image_id or image_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(WardrobeBaseException):
    """Raised when an upload is not an acceptable image."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ImageNotFoundError(WardrobeBaseException):
    """Raised when an image record does not exist (or is not visible to the owner)."""

    def __init__(self, image_id: str, **kwargs):
        super().__init__(f"Image not found: {image_id}", code=404, image_id=image_id, **kwargs)


class PersistenceError(WardrobeBaseException):
    """Raised when a database or disk write fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


# --- Stage errors ------------------------------------------------------------

class PipelineStageError(WardrobeBaseException):
    """Raised when a pipeline stage fails."""

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, code=500, stage=stage, **kwargs)


class BackgroundRemovalError(PipelineStageError):
    """Raised when the external background-removal tool does not succeed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="background_removal", **kwargs)


class SubprocessTimeoutError(BackgroundRemovalError):
    """Raised when the background-removal process exceeds its timeout."""

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(
            f"Background removal timeout after {timeout_seconds:g}s",
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


class SubprocessFailureError(BackgroundRemovalError):
    """Raised when the background-removal process reports failure or lies about success."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.details["returncode"] = returncode
        if stderr:
            self.details["stderr"] = stderr


class OptimizationError(PipelineStageError):
    """Raised when the optimized rendition cannot be produced."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="optimization", **kwargs)


class ThumbnailError(PipelineStageError):
    """Raised when the thumbnail cannot be produced."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="thumbnail", **kwargs)


class ColorExtractionError(PipelineStageError):
    """Raised inside color extraction; always resolved to the fallback palette."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="color_extraction", **kwargs)


# --- Retry rejections --------------------------------------------------------

class RetryRejectedError(WardrobeBaseException):
    """Raised when a retry request is refused. The record is left untouched."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=409, **kwargs)


class InvalidStateError(RetryRejectedError):
    """Raised when a record is not in the status a transition requires."""

    def __init__(self, image_id: str, status: str, expected: str = "failed", **kwargs):
        super().__init__(
            f"Only {expected} images can be retried (current status: {status})",
            image_id=image_id,
            **kwargs
        )
        self.details["status"] = status
        self.details["expected"] = expected


class RetryLimitReachedError(RetryRejectedError):
    """Raised when a record has used up its retries."""

    def __init__(self, image_id: str, max_retries: int, **kwargs):
        super().__init__(
            f"Max retries ({max_retries}) reached",
            image_id=image_id,
            **kwargs
        )
        self.details["max_retries"] = max_retries


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: WardrobeBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "image_id": exc.image_id or image_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(WardrobeBaseException)
    async def wardrobe_exception_handler(request: Request, exc: WardrobeBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "wardrobe_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "image_id": image_id_var.get(),
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            }
        )
