"""
Error taxonomy for the search and alerting engine.

Every error carries a stable machine-readable code distinct from its
human-readable message so callers can branch without string matching.
"""
from typing import Any, Dict, Optional


class ErrorCode:
    """Standard error codes."""

    # Caller errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_QUERY = "INVALID_QUERY"

    # Resource errors
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"
    CONFLICT = "CONFLICT"

    # Lifecycle errors
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"

    # Backend errors
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"

    # System errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LogLensError(Exception):
    """
    Base error with a stable code.

    Usage:
        raise NotFoundError(
            "Alert not found",
            details={"alert_id": str(alert_id)},
        )
    """

    code: str = ErrorCode.INTERNAL_ERROR
    retryable: bool = False
    caller_error: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Standard error envelope."""
        error: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ValidationError(LogLensError):
    """Query, time range or page size out of bounds. Rejected before storage."""

    code = ErrorCode.VALIDATION_ERROR
    caller_error = True


class QueryError(ValidationError):
    """Malformed query: unparsable pattern, unknown field, bad aggregation."""

    code = ErrorCode.INVALID_QUERY


class NotFoundError(LogLensError):
    code = ErrorCode.NOT_FOUND
    caller_error = True


class DuplicateRecordError(LogLensError):
    """A log record with the same id is already stored."""

    code = ErrorCode.DUPLICATE_RECORD
    caller_error = True


class ConflictError(LogLensError):
    """Alert dedup contention that survived the bounded retry loop."""

    code = ErrorCode.CONFLICT
    retryable = True


class StateError(LogLensError):
    """Invalid alert lifecycle transition."""

    code = ErrorCode.INVALID_STATE_TRANSITION
    caller_error = True


class BackendUnavailableError(LogLensError):
    """Raised when a storage backend is unreachable or refuses work."""

    code = ErrorCode.BACKEND_UNAVAILABLE
    retryable = True

    def __init__(self, backend: str, reason: str = "unknown", details: Optional[Dict[str, Any]] = None):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} backend unavailable: {reason}", details=details)


# Convenience constructors for common errors

def not_found(resource: str, details: Optional[Dict[str, Any]] = None) -> NotFoundError:
    """Create a NOT_FOUND error."""
    return NotFoundError(f"{resource} not found", details=details)


def validation_error(message: str, details: Optional[Dict[str, Any]] = None) -> ValidationError:
    """Create a VALIDATION_ERROR error."""
    return ValidationError(message, details=details)


def query_error(message: str, details: Optional[Dict[str, Any]] = None) -> QueryError:
    """Create an INVALID_QUERY error."""
    return QueryError(message, details=details)
