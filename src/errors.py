"""Error taxonomy for the tracker service.

Every error that can leave the service carries an HTTP status and a machine
code; api.py turns them into the JSON error envelope.
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base exception for all tracker errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidSchema(TrackerError):
    """Raised when a CSV header cannot be mapped (e.g. no timestamp column)."""

    status_code = 400
    code = "INVALID_SCHEMA"

    def __init__(self, message: str, headers: Optional[list] = None):
        super().__init__(message)
        self.headers = list(headers or [])


class EmptyFile(TrackerError):
    status_code = 400
    code = "EMPTY_FILE"


class UnsupportedDelimiter(TrackerError):
    status_code = 400
    code = "UNSUPPORTED_DELIMITER"


class ParseError(TrackerError):
    """Raised when the file as a whole cannot be read."""

    status_code = 400
    code = "PARSE_ERROR"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class InvalidRequest(TrackerError):
    status_code = 400
    code = "INVALID_REQUEST"


class FileTooLarge(TrackerError):
    status_code = 400
    code = "FILE_TOO_LARGE"


class Unauthorized(TrackerError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(TrackerError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(TrackerError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(TrackerError):
    status_code = 409
    code = "CONFLICT"


class RequestCancelled(TrackerError):
    status_code = 499
    code = "REQUEST_CANCELLED"


class UpstreamUnavailable(TrackerError):
    status_code = 502
    code = "UPSTREAM_UNAVAILABLE"


class ResourceBusy(TrackerError):
    """Raised when the connection pool has no free connection."""

    status_code = 503
    code = "RESOURCE_BUSY"

    def __init__(self, message: str = "Database is busy, retry shortly", retry_after: int = 2):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamTimeout(TrackerError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class InternalError(TrackerError):
    """Unexpected failure; only the correlation id leaves the service."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id
