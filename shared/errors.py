"""
Shared error handling for Streampulse services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from .logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class PulseException(Exception):
    """Base exception for Streampulse services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthRequired(PulseException):
    """Privileged operation attempted before authentication."""

    status_code = 401

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTH_REQUIRED", message, details)


class InvalidCredential(PulseException):
    """Credential signature or expiry check failed."""

    status_code = 401

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIAL", message, details)


class InvalidTopic(PulseException):
    """Topic identifier does not match the topic grammar."""

    def __init__(self, topic: str, message: Optional[str] = None):
        super().__init__(
            "INVALID_TOPIC",
            message or f"Invalid topic: {topic}",
            {"topic": topic}
        )


class DeliveryFailure(PulseException):
    """Transport write to a single connection failed."""

    def __init__(self, connection_id: str, message: str = "Delivery failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("DELIVERY_FAILURE", message, {"connection_id": connection_id, **(details or {})})


class ExternalServiceError(PulseException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class ConnectionLimitExceeded(PulseException):
    """Too many concurrent connections."""

    status_code = 503

    def __init__(self, limit: int):
        super().__init__(
            "CONNECTION_LIMIT_EXCEEDED",
            f"Maximum connections ({limit}) exceeded",
            {"limit": limit}
        )
