"""
Application Exceptions

Error taxonomy shared by the services, the TTL sweeper and the HTTP layer.
Every exception carries the HTTP status and error code it is reported with.
"""

from typing import Any, Dict, Optional

from fastapi import status


class AppException(Exception):
    """Base exception class for all application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        extra: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.extra = extra or {}
        super().__init__(message)


class InvalidInputError(AppException):
    """Raised for malformed slugs, out-of-range fractions, bad dates and similar."""

    def __init__(
        self,
        message: str = "Invalid input",
        extra: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="INVALID_INPUT",
            extra=extra
        )


class NotFoundError(AppException):
    """Raised when a segment slug or user id does not resolve."""

    def __init__(
        self,
        message: str = "Resource not found",
        extra: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="NOT_FOUND",
            extra=extra
        )


class TransientStoreError(AppException):
    """Raised when the database is unreachable or a statement fails."""

    def __init__(
        self,
        message: str = "Storage temporarily unavailable",
        extra: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="STORE_UNAVAILABLE",
            extra=extra
        )


class IntegrityViolationError(AppException):
    """
    Raised when rolling back a failed transaction fails as well.

    Both the error that triggered the rollback and the rollback error are kept.
    """

    def __init__(
        self,
        operation: str,
        original_error: BaseException,
        rollback_error: BaseException,
    ):
        self.operation = operation
        self.original_error = original_error
        self.rollback_error = rollback_error
        super().__init__(
            message=(
                f"{operation} failed: {original_error}; "
                f"rollback failed: {rollback_error}"
            ),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTEGRITY_VIOLATION",
            extra={
                "operation": operation,
                "original_error": repr(original_error),
                "rollback_error": repr(rollback_error),
            }
        )


class RequestTimeoutError(AppException):
    """Raised when a request exceeds its deadline."""

    def __init__(
        self,
        message: str = "Request deadline exceeded",
        extra: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="REQUEST_TIMEOUT",
            extra=extra
        )


__all__ = [
    "AppException",
    "InvalidInputError",
    "NotFoundError",
    "TransientStoreError",
    "IntegrityViolationError",
    "RequestTimeoutError",
]
