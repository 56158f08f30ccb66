"""
Error taxonomy shared by the stream client, the extraction chain and the
dispatcher.
"""

from __future__ import annotations

from typing import Optional


class ReelSyncError(Exception):
    """Base class for every error raised by this package."""


class AuthError(ReelSyncError):
    """A bearer credential could not be obtained."""


class StreamConnectionError(ReelSyncError):
    """Transport-level failure of the event stream (refused, reset, timeout)."""


class ThrottledError(ReelSyncError):
    """The downstream API answered "too many requests"."""


class ValidationError(ReelSyncError):
    """An inbound event or payload is malformed or incomplete. Never retried."""


class ExtractionError(ReelSyncError):
    """No extraction strategy could produce a result."""


class TranscriptionError(ExtractionError):
    """A transcriber could not turn the media into text."""


class DispatchError(ReelSyncError):
    """A downstream write failed for good."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MediaError(ReelSyncError):
    """A recording could not be downloaded or converted."""
