"""
Application exceptions for centralized error handling
"""

from typing import Optional, Dict, Any


class BaseAppException(Exception):
    """Base application exception"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


# === Authentication / authorization ===
class AuthenticationError(BaseAppException):
    """Missing or invalid credentials"""

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, 401, "AUTHENTICATION_ERROR", details)


class AuthorizationError(BaseAppException):
    """Actor lacks the capability for an action"""

    def __init__(
        self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, 403, "AUTHORIZATION_ERROR", details)


# === Validation ===
class ValidationError(BaseAppException):
    """Malformed or out-of-range input"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        super().__init__(message, 422, "VALIDATION_ERROR", details)


# === Conflicts ===
class ConflictError(BaseAppException):
    """Uniqueness or optimistic-concurrency violation"""

    def __init__(
        self,
        message: str,
        reason: str = "conflict",
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details.setdefault("reason", reason)
        super().__init__(message, 409, "CONFLICT", details)


class DuplicateAttendanceError(ConflictError):
    """A live record already occupies the slot"""

    def __init__(self, slot_key: str):
        super().__init__(
            "Attendance already recorded for this student on this date/period",
            reason="duplicate",
            details={"slot_key": slot_key},
        )


class StaleVersionError(ConflictError):
    """Record changed since the caller last read it"""

    def __init__(
        self, resource: str, identifier: int, expected: Optional[int], current: Optional[int]
    ):
        super().__init__(
            f"{resource} '{identifier}' was modified by another request",
            reason="stale_version",
            details={
                "resource": resource,
                "identifier": identifier,
                "expected_version": expected,
                "current_version": current,
            },
        )


# === Resources ===
class NotFoundError(BaseAppException):
    """Resource not found"""

    def __init__(self, resource: str, identifier: str = None):
        if identifier:
            message = f"{resource} with identifier '{identifier}' not found"
            details = {"resource": resource, "identifier": identifier}
        else:
            message = f"{resource} not found"
            details = {"resource": resource}
        super().__init__(message, 404, "NOT_FOUND", details)


# === Infrastructure ===
class InternalError(BaseAppException):
    """Opaque failure surfaced to callers; full detail stays in the logs"""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        correlation_id: Optional[str] = None,
    ):
        details = {"correlation_id": correlation_id} if correlation_id else {}
        super().__init__(message, 500, "INTERNAL_ERROR", details)


class DatabaseConnectionError(BaseAppException):
    """Database is unreachable"""

    def __init__(self, message: str = "Database connection failed"):
        super().__init__(message, 503, "DATABASE_CONNECTION_ERROR")


class DatabaseTimeoutError(BaseAppException):
    """Database operation timed out"""

    def __init__(self, operation: str, timeout: int):
        message = f"Database operation '{operation}' timed out after {timeout}s"
        details = {"operation": operation, "timeout": timeout}
        super().__init__(message, 504, "DATABASE_TIMEOUT", details)


class ExternalServiceError(BaseAppException):
    """External collaborator failed"""

    def __init__(self, service: str, message: str = None):
        message = message or f"External service '{service}' error"
        details = {"service": service}
        super().__init__(message, 502, "EXTERNAL_SERVICE_ERROR", details)


class ConfigurationError(BaseAppException):
    """Invalid or missing configuration"""

    def __init__(self, parameter: str, message: str = None):
        message = (
            message or f"Configuration parameter '{parameter}' is invalid or missing"
        )
        details = {"parameter": parameter}
        super().__init__(message, 500, "CONFIGURATION_ERROR", details)
