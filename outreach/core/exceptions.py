"""
Custom Exception Hierarchy

Structured exceptions shared by the queue, the gateway transport, the webhook
processor and the HTTP layer.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Queue errors (2xxx)
    MESSAGE_NOT_FOUND = "ERR_2001"
    INVALID_STATE_TRANSITION = "ERR_2002"

    # Webhook errors (3xxx)
    WEBHOOK_PARSE_ERROR = "ERR_3001"

    # Monitoring errors (4xxx)
    HEALTH_CHECK_FAILED = "ERR_4001"
    ALERT_NOT_FOUND = "ERR_4002"

    # External service errors (5xxx)
    GATEWAY_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class InvalidStateTransitionError(AppException):
    """Raised when a queued message cannot move to the requested status"""

    def __init__(self, current_state: str, target_state: str, job_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "job_id": job_id
            }
        )


class WebhookParseError(AppException):
    """Raised when a gateway webhook payload cannot be classified"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.WEBHOOK_PARSE_ERROR,
            status_code=422,
            details=details
        )


class HealthCheckError(AppException):
    """Raised by a component probe that cannot determine its state"""

    def __init__(self, component: str, message: str):
        super().__init__(
            message=f"{component} health check failed: {message}",
            error_code=ErrorCode.HEALTH_CHECK_FAILED,
            status_code=503,
            details={"component": component}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TransportError(ExternalServiceException):
    """Raised when the messaging gateway rejects or fails a call. Retryable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="gateway",
            message=f"Gateway error: {message}",
            error_code=ErrorCode.GATEWAY_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TransportError":
        """
        Build a TransportError from an HTTP response.

        Args:
            operation: gateway operation name (send-text, status)
            response: response object (e.g. httpx.Response)
            message: custom message, built from the status code when omitted
            max_response_chars: response body is truncated to keep log lines small
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
