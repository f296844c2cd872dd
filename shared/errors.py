"""
Shared error handling for the cluster access gatekeeper.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    message: str
    trace_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class GatekeeperException(Exception):
    """Base exception for gatekeeper services."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
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
            error=self.code,
            message=self.message,
            trace_id=trace_id,
            details=self.details or None,
        )


class AuthenticationError(GatekeeperException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("Unauthorized", message, details)


class MalformedCredentialError(AuthenticationError):
    """Bad header or token shape. Always detected locally."""

    def __init__(self, message: str = "Missing or invalid authorization header", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class AuthorizationError(GatekeeperException):
    """Authenticated but insufficiently privileged."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("Forbidden", message, details)


class ValidationError(GatekeeperException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class KeySetUnavailableError(GatekeeperException):
    """The issuer key set could not be fetched or was not a valid set."""

    status_code = 503

    def __init__(self, message: str = "Key set unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_SET_UNAVAILABLE", message, details)


class SignatureOrClaimInvalidError(GatekeeperException):
    """Well-formed token that failed signature or claim checks."""

    status_code = 401

    def __init__(self, message: str = "Token signature or claims invalid", details: Optional[Dict[str, Any]] = None):
        super().__init__("SIGNATURE_OR_CLAIM_INVALID", message, details)


class ExternalServiceError(GatekeeperException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class UpstreamRejectedError(ExternalServiceError):
    """The issuer answered with a non-success status."""

    def __init__(self, service: str, status_code: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(service, f"rejected with HTTP {status_code}", details)
        self.code = "UPSTREAM_REJECTED"
        self.upstream_status = status_code


class UpstreamTimeoutError(ExternalServiceError):
    """The issuer did not answer within the configured timeout."""

    status_code = 504

    def __init__(self, service: str, message: str = "request timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__(service, message, details)
        self.code = "UPSTREAM_TIMEOUT"


class InvalidOrExpiredInstallTokenError(GatekeeperException):
    """Install token is unknown, already consumed, or past its expiry."""

    def __init__(self, message: str = "Invalid or expired install token", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_INSTALL_TOKEN", message, details)


class CertificateParseError(GatekeeperException):
    """The presented client certificate could not be parsed."""

    def __init__(self, message: str = "Failed to parse client certificate", details: Optional[Dict[str, Any]] = None):
        super().__init__("CERTIFICATE_PARSE_ERROR", message, details)


class ServiceNotFoundError(GatekeeperException):
    """No connected service matches the lookup."""

    status_code = 404

    def __init__(self, message: str = "Service not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_NOT_FOUND", message, details)


class DuplicateConsumptionError(GatekeeperException):
    """An install token was consumed twice: the store's atomic primitive was violated."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)


class StoreUnavailableError(GatekeeperException):
    """The shared store could not be reached."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)
