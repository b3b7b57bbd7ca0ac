"""
Exceptions raised by the AppEngine data access layer.
"""

from typing import Optional

from interfaces import SchemaMismatchError


class AppEngineError(Exception):
    """Base exception for AppEngine data access errors."""
    pass


class TransportError(AppEngineError):
    """Raised when a request fails or returns an unexpected status."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or {}


class AuthenticationError(TransportError):
    """Raised when the API rejects the token (401/403)."""
    pass


class DecodeError(AppEngineError):
    """Raised when a response body is not the expected JSON envelope."""
    pass


class MalformedRecordError(AppEngineError):
    """Raised when a data record lacks the fields required to decode it."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class MalformedTimestampError(MalformedRecordError):
    """Raised when a timestamp field is present but cannot be parsed."""

    def __init__(self, path: str, field: str, value):
        super().__init__(
            f"Invalid {field} {value!r} at {path or '/'}: expected an RFC 3339 timestamp",
            path=path
        )
        self.field = field
        self.value = value


class NoMorePagesError(AppEngineError):
    """Raised when asking an exhausted paginator for another page."""
    pass


__all__ = [
    'AppEngineError',
    'TransportError',
    'AuthenticationError',
    'DecodeError',
    'MalformedRecordError',
    'MalformedTimestampError',
    'NoMorePagesError',
    'SchemaMismatchError',
]
