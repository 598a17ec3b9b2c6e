"""
One-Shot Comic — Error taxonomy.

Script-stage errors abort a whole generation or continuation attempt.
Image-stage errors are caught per panel and recorded on that panel.
"""

from typing import Optional


class ComicError(Exception):
    """Base class for every error raised by the comic core."""


class FileTooLargeError(ComicError):
    """Reference image exceeds the upload limit. Raised before any request."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"File is too large ({size / (1024 * 1024):.1f} MB). "
            f"Please select an image under {limit // (1024 * 1024)} MB."
        )


class MalformedScriptError(ComicError):
    """Script response was empty or did not match the script schema."""


class NoImageDataError(ComicError):
    """Image response did not contain an inline image payload."""


class UpstreamError(ComicError):
    """Transport, quota or service failure at a model boundary."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
