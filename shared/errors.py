"""
Shared error handling for the AI Credit Gateway.

Every error the gateway raises on the request path derives from
GatewayException and carries the HTTP status it maps to. MeteringError is
the exception: it is raised and caught inside the metering ledger and never
reaches a caller.
"""

from datetime import datetime
from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class GatewayException(Exception):
    """Base exception for gateway services."""

    status_code: int = 400

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
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(GatewayException):
    """Request failed validation. Terminal, no side effects."""

    MISSING_FIELD = "MISSING_FIELD"
    MALFORMED_FIELD = "MALFORMED_FIELD"
    NOT_ALLOW_LISTED = "NOT_ALLOW_LISTED"

    status_code = 400

    def __init__(self, kind: str, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(kind, message, details)


class ResolutionError(GatewayException):
    """The resource is unknown, or known but disabled."""

    NOT_FOUND = "RESOURCE_NOT_FOUND"
    INACTIVE = "RESOURCE_INACTIVE"

    def __init__(self, kind: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        if kind == self.NOT_FOUND:
            super().__init__(kind, message or "Project not found", details, status_code=404)
        else:
            super().__init__(kind, message or "AI assistant is not active for this project", details, status_code=403)


class AdmissionDenied(GatewayException):
    """Rate limit rejected the request.

    ``reset_at`` is None when the denial came from a counter store outage.
    """

    MINUTE_LIMIT = "RATE_LIMIT_MINUTE"
    DAY_LIMIT = "RATE_LIMIT_DAY"
    STORE_UNAVAILABLE = "RATE_LIMIT_UNAVAILABLE"

    status_code = 429

    def __init__(self, code: str, message: str = "Rate limit exceeded",
                 reset_at: Optional[datetime] = None, details: Optional[Dict[str, Any]] = None):
        self.reset_at = reset_at
        details = dict(details or {})
        if reset_at is not None:
            details["reset_at"] = reset_at.isoformat()
        super().__init__(code, message, details)

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Seconds until the window resets, for the Retry-After header."""
        if self.reset_at is None:
            return None
        now = datetime.now(self.reset_at.tzinfo)
        return max(1, int((self.reset_at - now).total_seconds()))


class ProviderError(GatewayException):
    """The external AI provider failed; upstream status is passed through."""

    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"

    def __init__(self, message: str = "Provider error", status_code: int = 502,
                 code: str = PROVIDER_ERROR, details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details, status_code=status_code)


class ConfigurationError(GatewayException):
    """Service is missing required configuration."""

    status_code = 500

    def __init__(self, message: str = "API configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class StoreUnavailableError(GatewayException):
    """Backing document store could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Storage unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class MeteringError(GatewayException):
    """Charge could not be recorded. Logged only."""

    status_code = 500

    def __init__(self, stage: str, message: str = "Metering failed", details: Optional[Dict[str, Any]] = None):
        self.stage = stage
        super().__init__("METERING_ERROR", message, details)
