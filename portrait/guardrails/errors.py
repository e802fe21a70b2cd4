"""Error taxonomy for the portrait pipeline and helpers that translate it to HTTP responses."""
import logging
from typing import Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class PortraitError(Exception):
    """Base class for every error the pipeline raises on purpose."""


class ValidationError(PortraitError):
    """Bad or missing source URL or identifier. Raised before any job is created."""


class FetchError(PortraitError):
    """The remote source could not be downloaded.
    status_code is the remote HTTP status when the server answered, None when it was unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    @property
    def unreachable(self) -> bool:
        return self.status_code is None


class TranscodeError(PortraitError):
    """ffmpeg exited non-zero, timed out, or produced no usable output. diagnostics holds the captured stderr tail (logged, never returned to clients)."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics


class Conflict(PortraitError):
    """A registry mutation does not match the job's current state (e.g. completing a job that is not transcoding)."""


class JobNotFound(PortraitError):
    """No job is registered under the identifier."""

    def __init__(self, identifier: str):
        super().__init__(f"Unknown prediction_id: {identifier}")
        self.identifier = identifier


def as_http_500(e: Exception) -> HTTPException:
    """Log exception and return a generic 500 HTTPException (no internal details leaked).
    Why available: Centralized error handling so API never leaks stack traces or internal state to clients."""
    logger.error("unhandled_error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")
