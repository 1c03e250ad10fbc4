"""
Shared error handling for the Shopping Mesh services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    success: bool = False
    code: str
    message: str
    service: Optional[str] = None
    details: Dict[str, Any] = {}


class PlatformException(Exception):
    """Base exception for Shopping Mesh services."""

    status_code = 500

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
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(PlatformException):
    """Missing or malformed input."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__("VALIDATION_ERROR", message, details)


class AuthenticationError(PlatformException):
    """Missing or invalid credential."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(PlatformException):
    """Credential lacks the privilege for the operation."""

    status_code = 403

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(PlatformException):
    """Unknown identifier, or a record owned by someone else."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(PlatformException):
    """Duplicate unique key."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class RevisionConflictError(ConflictError):
    """A write carried a stale record revision."""

    def __init__(self, record_id: str, expected: int, actual: int):
        super().__init__(
            f"Record {record_id} was modified concurrently",
            details={"id": record_id, "expected_revision": expected, "actual_revision": actual}
        )
        self.code = "REVISION_CONFLICT"
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class ServiceUnavailableError(PlatformException):
    """A downstream service cannot be reached. Always names the service."""

    status_code = 503

    def __init__(self, service: str, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "SERVICE_UNAVAILABLE",
            message or f"Service {service} unavailable",
            details
        )
        self.service = service

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        response.service = self.service
        return response


class InternalError(PlatformException):
    """Unhandled fault. The message shown to clients never carries internals."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)
