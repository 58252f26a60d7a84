"""
Shared error handling for the Document Gateway.

Every failure surfaced over HTTP is a ``ServiceException`` subclass carrying the
status code it maps to. Validation failures are raised before any datastore
call; datastore failures are translated at the adapter boundary.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


def current_trace_id() -> Optional[str]:
    """Return the hex trace id of the recording span, if any."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class ServiceException(Exception):
    """Base exception for Document Gateway services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidArgumentError(ServiceException):
    """Malformed identifier, name, body or query parameter."""

    status_code = 400

    def __init__(self, message: str = "Invalid argument", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ARGUMENT", message, details)


class NotFoundError(ServiceException):
    """No document matched the lookup."""

    status_code = 404

    def __init__(self, message: str = "Document not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(ServiceException):
    """Uniqueness constraint violated."""

    status_code = 409

    def __init__(
        self,
        message: str = "Duplicate key error: A document with this value already exists",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__("CONFLICT", message, details)


class UnavailableError(ServiceException):
    """Datastore connectivity failure."""

    status_code = 503

    def __init__(self, message: str = "Database connection error", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAVAILABLE", message, details)


class InternalError(ServiceException):
    """Unclassified server-side failure."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)
