"""Exception hierarchy for tordirect.

Every error raised by the session and streaming gateway derives from
:class:`TorDirectError`. Subclasses carry a stable ``code`` used by the HTTP
layer for the ``ErrorResponse`` body and an ``http_status`` for the response.
"""

from __future__ import annotations

from typing import Any


class TorDirectError(Exception):
    """Base exception for all tordirect errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize tordirect error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(TorDirectError):
    """Request or data validation errors."""

    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidDescriptorError(ValidationError):
    """Content descriptor could not be parsed."""

    code = "INVALID_DESCRIPTOR"


class ConfigurationError(ValidationError):
    """Configuration validation errors."""

    code = "CONFIGURATION_ERROR"


class MalformedRangeError(ValidationError):
    """Range header is syntactically invalid."""

    code = "MALFORMED_RANGE"


class AlreadyExistsError(TorDirectError):
    """A session for the content already exists."""

    code = "ALREADY_EXISTS"
    http_status = 409


class SourceStartFailedError(TorDirectError):
    """Content source refused or failed to start a transfer."""

    code = "SOURCE_START_FAILED"
    http_status = 502


class SessionNotFoundError(TorDirectError):
    """No session is registered for the content id."""

    code = "SESSION_NOT_FOUND"
    http_status = 404


class FileIndexOutOfRangeError(TorDirectError):
    """File index does not exist in the session."""

    code = "FILE_NOT_FOUND"
    http_status = 404


class MetadataNotReadyError(TorDirectError):
    """Session has no file list yet."""

    code = "METADATA_NOT_READY"
    http_status = 409


class RangeNotSatisfiableError(TorDirectError):
    """Requested byte range lies outside the file."""

    code = "RANGE_NOT_SATISFIABLE"
    http_status = 416

    def __init__(
        self,
        message: str,
        length: int,
        details: dict[str, Any] | None = None,
    ):
        """Initialize with the file length used for ``Content-Range``."""
        super().__init__(message, details)
        self.length = length


class StorageError(TorDirectError):
    """Storage root and persistence errors."""

    code = "STORAGE_ERROR"


class StorageUnavailableError(StorageError):
    """Storage root is missing or not writable."""

    code = "STORAGE_UNAVAILABLE"
    http_status = 503


class PersistenceWriteFailedError(StorageError):
    """Persistent log could not be written."""

    code = "PERSISTENCE_WRITE_FAILED"


class StreamIOError(TorDirectError):
    """Content source failed while bytes were being streamed."""

    code = "STREAM_IO_ERROR"
