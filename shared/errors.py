"""
Shared error handling for Tracker Studio services.

Every error distinguishes "fix your input" (validation), "you lack rights"
(permission), "not there for you" (not found) and "try again" (conflict) so
callers can react differently.
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


class TrackerStudioException(Exception):
    """Base exception for Tracker Studio services."""
    
    status_code = 400
    
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


class AuthenticationError(TrackerStudioException):
    """Authentication-related errors."""
    
    status_code = 401
    
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(TrackerStudioException):
    """Input violates structural, type or constraint rules."""
    
    status_code = 422
    
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class PermissionDeniedError(TrackerStudioException):
    """Resolved capability is insufficient for the requested operation."""
    
    status_code = 403
    
    def __init__(self, message: str = "Permission denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMISSION_DENIED", message, details)


class NotFoundError(TrackerStudioException):
    """Entity does not exist or is not visible to the principal."""
    
    status_code = 404
    
    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(TrackerStudioException):
    """Duplicate creation or lost optimistic lock. Retryable after a re-read."""
    
    status_code = 409
    
    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("retryable", True)
        super().__init__("CONFLICT", message, details)


class StoreError(TrackerStudioException):
    """Lower-level store failure wrapped with the operation being attempted."""
    
    status_code = 503
    
    def __init__(self, operation: str, message: str = "Store error", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["operation"] = operation
        super().__init__("STORE_ERROR", f"{operation}: {message}", details)
