"""
Error Handling Module

This module maps application errors to standardized JSON responses with:
- A shared error envelope
- Request validation handling (reported as 400 Bad Request)
- Logging of every failure before responding
- Metrics tracking
- Environment-aware error details
"""

import logging
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from usersegments.core.exceptions import AppException
from usersegments.core.logging import correlation_id, get_logger
from usersegments.monitoring.prometheus import get_api_errors_total

# Initialize logger
logger = get_logger(__name__)


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    timestamp: str
    status_code: int
    message: str
    error_code: str
    correlation_id: str
    path: str
    details: Optional[Dict[str, Any]] = None


def _is_development(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return settings is not None and settings.app.ENVIRONMENT == "development"


def create_error_response(
    request: Request,
    status_code: int,
    message: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        request: FastAPI request object
        status_code: HTTP status code
        message: Error message
        error_code: Error code for client identification
        details: Optional additional error details
    """
    error_response = ErrorResponse(
        timestamp=datetime.now(UTC).isoformat(),
        status_code=status_code,
        message=message,
        error_code=error_code,
        correlation_id=correlation_id.get(),
        path=str(request.url.path),
        details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )


async def handle_app_exception(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle custom application exceptions."""
    server_error = exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.log(
        logging.ERROR if server_error else logging.WARNING,
        f"Application error: {exc.message}",
        extra={
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
            "extra": exc.extra
        },
        exc_info=exc if server_error else None
    )

    get_api_errors_total().labels(
        error_type=exc.__class__.__name__,
        endpoint=request.url.path,
        status_code=exc.status_code
    ).inc()

    # Server-side details only leave the process in development
    show_details = not server_error or _is_development(request)
    return create_error_response(
        request=request,
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.extra if show_details else None
    )


async def handle_validation_error(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors as 400 Bad Request."""
    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": " -> ".join(str(x) for x in error["loc"]),
            "msg": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        "Request validation failed",
        extra={
            "path": request.url.path,
            "method": request.method,
            "validation_errors": error_details
        }
    )

    get_api_errors_total().labels(
        error_type="ValidationError",
        endpoint=request.url.path,
        status_code=status.HTTP_400_BAD_REQUEST
    ).inc()

    return create_error_response(
        request=request,
        status_code=status.HTTP_400_BAD_REQUEST,
        message="Request validation failed",
        error_code="INVALID_INPUT",
        details={"errors": error_details}
    )


async def handle_http_exception(
    request: Request,
    exc: HTTPException
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(
        f"HTTP error: {exc.detail}",
        extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method
        }
    )

    get_api_errors_total().labels(
        error_type="HTTPException",
        endpoint=request.url.path,
        status_code=exc.status_code
    ).inc()

    return create_error_response(
        request=request,
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}"
    )


async def handle_generic_exception(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle any unhandled exceptions."""
    logger.critical(
        f"Unhandled error: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method
        },
        exc_info=exc
    )

    get_api_errors_total().labels(
        error_type=exc.__class__.__name__,
        endpoint=request.url.path,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    ).inc()

    return create_error_response(
        request=request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=str(exc) if _is_development(request) else "An unexpected error occurred",
        error_code="INTERNAL_SERVER_ERROR"
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.
    """
    app.add_exception_handler(AppException, handle_app_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_generic_exception)

    logger.debug("Exception handlers registered")


__all__ = [
    "ErrorResponse",
    "handle_app_exception",
    "handle_validation_error",
    "handle_http_exception",
    "handle_generic_exception",
    "register_exception_handlers",
]
