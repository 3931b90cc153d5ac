"""
Custom Exception Hierarchy

Structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook ingestion errors (2xxx)
    WEBHOOK_SIGNATURE_MISSING = "ERR_2001"
    WEBHOOK_INTEGRITY_FAILED = "ERR_2002"
    WEBHOOK_PROCESSING_FAILED = "ERR_2003"

    # Work queue errors (3xxx)
    QUEUE_ITEM_NOT_FOUND = "ERR_3001"
    QUEUE_STORAGE_UNAVAILABLE = "ERR_3002"
    QUEUE_INVALID_TRANSITION = "ERR_3003"

    # Scheduler errors (4xxx)
    JOB_NOT_FOUND = "ERR_4001"
    INVALID_SCHEDULE = "ERR_4002"
    SYNC_CONFIG_INVALID = "ERR_4003"

    # External service errors (5xxx)
    PARTNER_API_ERROR = "ERR_5001"
    PARTNER_AUTH_FAILED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


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


class WebhookIntegrityError(AppException):
    """
    Signature or decryption failure on an inbound webhook.

    The public message is the same for both causes; ``reason`` is kept for
    internal logging only and is not part of ``to_dict()``.
    """

    PUBLIC_MESSAGE = "Invalid signature or payload could not be decrypted"

    def __init__(self, reason: str = "integrity"):
        super().__init__(
            message=self.PUBLIC_MESSAGE,
            error_code=ErrorCode.WEBHOOK_INTEGRITY_FAILED,
            status_code=400,
        )
        self.reason = reason


class QueueStorageError(AppException):
    """Raised when the queue store cannot be written or read"""

    def __init__(self, operation: str, message: str = "Queue storage unavailable"):
        super().__init__(
            message=message,
            error_code=ErrorCode.QUEUE_STORAGE_UNAVAILABLE,
            status_code=503,
            details={"operation": operation}
        )


class QueueItemNotFoundError(NotFoundException):
    """Raised when a queue item id does not exist"""

    def __init__(self, item_id: int):
        super().__init__("Queue item", item_id, ErrorCode.QUEUE_ITEM_NOT_FOUND)


class QueueTransitionError(AppException):
    """Raised when an operator action does not fit the item's status"""

    def __init__(self, item_id: int, current_status: str, action: str):
        super().__init__(
            message=f"Queue item {item_id} in status '{current_status}' cannot be {action}",
            error_code=ErrorCode.QUEUE_INVALID_TRANSITION,
            status_code=409,
            details={"item_id": item_id, "current_status": current_status, "action": action}
        )


class ScheduledJobNotFoundError(NotFoundException):
    """Raised when a scheduled job id is not registered"""

    def __init__(self, job_id: str):
        super().__init__("Scheduled job", job_id, ErrorCode.JOB_NOT_FOUND)


class InvalidScheduleError(AppException):
    """Raised when a schedule kind or its parameters are not usable"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_SCHEDULE,
            status_code=400,
            details=details
        )


class SyncConfigError(AppException):
    """Raised when the sync jobs file exists but cannot be read or parsed"""

    def __init__(self, path: str, reason: str):
        super().__init__(
            message=f"Sync jobs file {path} is invalid, loaded jobs were kept",
            error_code=ErrorCode.SYNC_CONFIG_INVALID,
            status_code=400,
            details={"path": path, "reason": reason}
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


class PartnerApiError(ExternalServiceException):
    """Raised when the partner API answers with an error or garbage"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.PARTNER_API_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="partner_api",
            message=f"Partner API error: {message}",
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        error_code: ErrorCode = ErrorCode.PARTNER_API_ERROR,
        max_response_chars: int = 500
    ) -> "PartnerApiError":
        """
        Build a PartnerApiError from an HTTP response.

        Args:
            operation: operation name (login, refresh, logout)
            response: response object (httpx.Response)
            message: custom message, built from the status code when omitted
            max_response_chars: cap on the stored response text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            error_code=error_code,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )
