"""
Middleware Module

This module provides middleware components for:
- Correlation ID tracking
- Request/response logging
- Prometheus metrics

Each middleware is integrated with the logging system.
"""

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from usersegments.core.logging import correlation_id, get_logger
from usersegments.monitoring.prometheus import (
    get_http_request_duration_seconds,
    get_http_requests_in_progress,
    get_http_requests_total,
)

# Initialize logger
logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Middleware to handle correlation ID for request tracing."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.header_name = "X-Correlation-ID"

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Extract or generate correlation ID and attach to context."""
        correlation_id_value = request.headers.get(
            self.header_name,
            str(uuid.uuid4())
        )

        # Set in context var for logging
        token = correlation_id.set(correlation_id_value)
        request.state.correlation_id = correlation_id_value

        try:
            response = await call_next(request)
        finally:
            correlation_id.reset(token)

        response.headers[self.header_name] = correlation_id_value
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging.

    Health probes and metric scrapes are not logged.
    """

    quiet_paths = ("/healthz", "/metrics")

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path.startswith(self.quiet_paths):
            return await call_next(request)

        start_time = time.time()

        logger.info(
            "Incoming request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query_params": str(request.query_params),
                "client_ip": request.client.host if request.client else None,
            }
        )

        response = await call_next(request)

        logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": (time.time() - start_time) * 1000,
            }
        )
        return response


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for each request."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        get_http_requests_in_progress().inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            get_http_requests_total().labels(
                method=request.method,
                endpoint=request.url.path,
                status_code=status_code
            ).inc()
            get_http_request_duration_seconds().labels(
                method=request.method,
                endpoint=request.url.path
            ).observe(time.time() - start_time)
            get_http_requests_in_progress().dec()
