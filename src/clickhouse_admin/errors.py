"""Structured error taxonomy for the ClickHouse admin API.

Every error raised across a service boundary inherits from StructuredError
and provides:
- An error category and severity
- A retryability indicator
- A consistent to_dict() method for JSON serialization
- The HTTP status the API layer should answer with

Example:
    >>> try:
    ...     raise Forbidden("Not your query", details={"query_id": "q-1"})
    ... except StructuredError as e:
    ...     error_json = e.to_dict()
    ...     print(error_json["error_type"])
    ...     print(error_json["category"])
"""
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ErrorCategory(Enum):
    """Error categories for classification."""
    AUTHENTICATION = "authentication"  # Missing or invalid caller identity
    AUTHORIZATION = "authorization"    # Known caller, insufficient permission/ownership
    CONNECTION = "connection"          # Picking or opening an engine connection
    EXECUTION = "execution"            # Engine listing/log/command failures
    VALIDATION = "validation"          # Request input errors
    CORRELATION = "correlation"        # Historical attribution (internal only)
    CONFIGURATION = "configuration"    # Configuration/setup errors
    UNKNOWN = "unknown"                # Unclassified errors


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class StructuredError(Exception):
    """Base class for all structured errors.

    Attributes:
        message: Human-readable error message
        category: ErrorCategory classification
        severity: ErrorSeverity level
        retryable: Whether the caller can retry the operation
        details: Additional context (dict)
        timestamp: When the error occurred
        http_status: Status code used by the API layer

    Example:
        >>> error = StructuredError(
        ...     "Something went wrong",
        ...     category=ErrorCategory.EXECUTION,
        ...     retryable=True,
        ...     details={"query_id": "abc"}
        ... )
        >>> error.to_dict()["error_type"]
        'StructuredError'
    """

    http_status: int = 500

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize structured error.

        Args:
            message: Human-readable error message
            category: Error category (default: UNKNOWN)
            severity: Error severity (default: ERROR)
            retryable: Whether operation can be retried (default: False)
            details: Additional context dictionary (default: None)
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary.

        Returns:
            Dictionary with error details in predictable schema:
            {
                "error_type": "ErrorClassName",
                "message": "Human-readable message",
                "category": "authorization|connection|execution|...",
                "severity": "info|warning|error|critical",
                "retryable": true|false,
                "details": {...},
                "timestamp": "2024-01-01T12:00:00.000000+00:00"
            }
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class AuthenticationRequired(StructuredError):
    """No valid caller identity on the request.

    Raised when the bearer token is missing, expired, or fails verification.
    """

    http_status = 401

    def __init__(self, message: str = "Authentication is required", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.AUTHENTICATION,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            details=details
        )


class Forbidden(StructuredError):
    """Known caller lacks the permission or ownership for the action.

    Example:
        >>> raise Forbidden(
        ...     "Permission 'live_queries:kill' is required",
        ...     details={"permission": "live_queries:kill"}
        ... )
    """

    http_status = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.AUTHORIZATION,
            severity=ErrorSeverity.WARNING,
            retryable=False,
            details=details
        )


class SessionOwnershipMismatch(Forbidden):
    """A session token was presented by someone other than its owner.

    Sessions are never reassigned to a different caller.
    """

    def __init__(self, message: str = "Session does not belong to current user", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class NoConnectionAvailable(StructuredError):
    """The caller has no usable (active) connection profile."""

    http_status = 400

    def __init__(self, message: str = "No ClickHouse connection available", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CONNECTION,
            severity=ErrorSeverity.ERROR,
            retryable=False,
            details=details
        )


class ConnectionUnreachable(StructuredError):
    """Building or handshaking an engine client failed.

    Retryable by the caller; the service itself does not retry.
    """

    http_status = 503

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CONNECTION,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class EngineUnavailable(StructuredError):
    """An engine listing, log read, or command could not be completed."""

    http_status = 503

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.ERROR,
            retryable=retryable,
            details=details
        )


class EngineQueryError(StructuredError):
    """The engine answered but rejected the statement (syntax, access, ...)."""

    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.EXECUTION,
            severity=ErrorSeverity.ERROR,
            retryable=False,
            details=details
        )


class ValidationError(StructuredError):
    """Error during input validation."""

    http_status = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            retryable=False,
            details=details
        )


class ConfigurationError(StructuredError):
    """Error in system configuration.

    Usually requires admin intervention (missing key, bad secret, ...).
    """

    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            details=details
        )


class CorrelationInconclusive(StructuredError):
    """No audit candidate could be tied to a historical log row.

    Internal only: it causes the row to stay unattributed and is never
    rendered to API clients.
    """

    def __init__(self, message: str = "No audit candidate in correlation window", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.CORRELATION,
            severity=ErrorSeverity.INFO,
            retryable=False,
            details=details
        )
