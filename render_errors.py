# render_errors.py
"""Errors raised while handling a render request.

Each class carries the HTTP status the request boundary maps it to.
"""

from typing import Optional


class RenderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InputError(RenderServiceError):
    """Missing or malformed request fields."""
    status_code = 400


class AcquisitionError(RenderServiceError):
    """The source video could not be saved or downloaded."""


class RenderError(RenderServiceError):
    """ffmpeg exited non-zero, timed out or could not be started."""


class ReadbackError(RenderServiceError):
    """ffmpeg reported success but the output file is missing or unreadable."""
