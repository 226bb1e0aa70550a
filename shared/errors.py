"""
Shared error handling for the edge resilience layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EdgeLayerException(Exception):
    """Base exception for edge layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(EdgeLayerException):
    """Invalid or inconsistent configuration."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class StoreUnavailableError(EdgeLayerException):
    """Key-value store could not be reached or returned garbage."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__("STORE_UNAVAILABLE", f"{operation}: {message}", details)


class ExternalServiceError(EdgeLayerException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class CircuitOpenError(EdgeLayerException):
    """Raised when a call is rejected by an open circuit."""

    status_code = 503

    def __init__(self, scope: str, state: str, retry_after: int, details: Optional[Dict[str, Any]] = None):
        self.scope = scope
        self.state = state
        self.retry_after = retry_after
        merged = {"scope": scope, "state": state, "retry_after": retry_after}
        merged.update(details or {})
        super().__init__(
            "CIRCUIT_OPEN",
            f"Circuit breaker '{scope}' is {state.upper()} - blocking call",
            merged,
        )
