"""
Shared error handling for the Entitlement Sync service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class EntitlementServiceException(Exception):
    """Base exception for the entitlement sync service."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(EntitlementServiceException):
    """Malformed or unacceptable request."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(EntitlementServiceException):
    """Referenced user, user type, item or link does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str, details: Optional[Dict[str, Any]] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            "NOT_FOUND",
            f"{entity} not found: {entity_id}",
            {"entity": entity, "id": entity_id, **(details or {})}
        )


class StoreError(EntitlementServiceException):
    """Storage operation failed for a single write."""

    def __init__(self, message: str = "Store operation failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "STORE_ERROR"):
        super().__init__(code, message, details)


class TransientStoreError(StoreError):
    """Storage failure that is expected to succeed on retry (deadlock, serialization, dropped connection)."""

    status_code = 503

    def __init__(self, message: str = "Transient store failure", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="STORE_TRANSIENT")


class StoreUnavailableError(EntitlementServiceException):
    """Storage is unreachable or retries are exhausted."""

    status_code = 503

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)
