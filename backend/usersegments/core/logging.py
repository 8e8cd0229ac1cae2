"""
Logging Configuration Module

This module provides the logging setup with:
- Structured JSON logging with request context
- Request-scoped correlation tracking
- Exception handling with full tracebacks
- Environment-aware handlers
- Background task logging support
"""

import contextlib
import logging
import logging.config
import sys
import time
import traceback
from contextvars import ContextVar
from datetime import datetime, UTC
from logging import LogRecord
from typing import Any, Dict, Iterator, Optional

from pythonjsonlogger import jsonlogger

from usersegments.core.settings import AppSettings

# Context variables for request-scoped data
correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')


class ContextualJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that adds environment, correlation ID and exception context.
    """

    def __init__(
        self,
        *args: Any,
        environment: str = "development",
        **kwargs: Any
    ) -> None:
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: LogRecord,
        message_dict: Dict[str, Any]
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, UTC).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['environment'] = self.environment

        request_correlation_id = correlation_id.get()
        if request_correlation_id:
            log_record['correlation_id'] = request_correlation_id

        if hasattr(record, 'duration_ms'):
            log_record['duration_ms'] = record.duration_ms

        # Add exception info with full traceback
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            log_record['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(exc_type, exc_value, exc_tb)
            }
            log_record.pop('exc_info', None)


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation ID to plain-text records."""

    def filter(self, record: LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or '-'
        return True


@contextlib.contextmanager
def log_duration(logger: logging.Logger, operation: str) -> Iterator[None]:
    """
    Context manager to log operation duration.
    """
    start_time = time.time()
    try:
        yield
    finally:
        duration = (time.time() - start_time) * 1000
        logger.debug(
            f"{operation} completed",
            extra={'duration_ms': duration, 'operation': operation}
        )


def setup_logging(settings: AppSettings) -> None:
    """
    Configure logging with custom formatter and handlers.

    Console output is always enabled; a rotating file handler is added when
    LOG_FILE_PATH is configured.
    """
    formatter = 'json' if settings.logging.JSON_LOGS else 'plain'

    handlers: Dict[str, Dict[str, Any]] = {
        'console': {
            'class': 'logging.StreamHandler',
            'stream': sys.stdout,
            'formatter': formatter,
            'filters': ['correlation_id'],
        }
    }

    log_file: Optional[str] = None
    if settings.logging.FILE_PATH:
        settings.logging.FILE_PATH.parent.mkdir(parents=True, exist_ok=True)
        log_file = str(settings.logging.FILE_PATH)
        handlers['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': log_file,
            'maxBytes': settings.logging.FILE_MAX_BYTES,
            'backupCount': settings.logging.FILE_BACKUP_COUNT,
            'formatter': formatter,
            'filters': ['correlation_id'],
        }

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'filters': {
            'correlation_id': {'()': CorrelationIdFilter},
        },
        'formatters': {
            'json': {
                '()': ContextualJsonFormatter,
                'format': '%(timestamp)s %(level)s %(name)s %(message)s',
                'json_ensure_ascii': False,
                'environment': settings.app.ENVIRONMENT,
            },
            'plain': {
                'format': '%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s',
            },
        },
        'handlers': handlers,
        'root': {
            'level': settings.logging.LEVEL,
            'handlers': list(handlers.keys())
        },
        'loggers': {
            'uvicorn': {'level': 'WARNING'},
            'sqlalchemy.engine': {'level': 'WARNING'},
        }
    })

    get_logger(__name__).info(
        "Logging configured",
        extra={
            'environment': settings.app.ENVIRONMENT,
            'log_level': settings.logging.LEVEL,
            'log_file': log_file,
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: The name of the logger (typically __name__)
    """
    return logging.getLogger(name)
