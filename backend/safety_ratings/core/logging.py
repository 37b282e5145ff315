"""
Structured logging configuration for the safety ratings service.

Provides:
- Structured JSON logging with request correlation
- Request ID tracking across the request lifecycle
- Configurable log levels per module
- Structured event helpers used by the pipeline components
"""

from __future__ import annotations

import logging
import os
import sys
import time
import traceback
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, UTC
from typing import Any, Optional, TYPE_CHECKING

from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from safety_ratings.core.config import settings

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

# Context variables for request correlation
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
job_name_var: ContextVar[Optional[str]] = ContextVar("job_name", default=None)


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with service and correlation fields.

    Adds:
    - Timestamp in ISO format (RFC 3339 compliant)
    - Log level with severity number
    - Logger name
    - Service name, version, and environment
    - Request ID or scheduled job name from context
    - Exception info with stack trace when present
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._hostname = os.uname().nodename if hasattr(os, "uname") else "unknown"
        self._pid = os.getpid()

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["severity"] = record.levelname.lower()
        log_record["level_num"] = record.levelno
        log_record["logger"] = record.name

        log_record["service"] = {
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
        }

        log_record["host"] = {
            "name": self._hostname,
            "pid": self._pid,
        }

        log_record["source"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_record["request_id"] = request_id

        job_name = job_name_var.get()
        if job_name:
            log_record["job"] = job_name

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            log_record["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack_trace": self.formatException(record.exc_info),
                "frames": self._extract_stack_frames(exc_tb),
            }
            if exc_value.__cause__:
                log_record["error"]["cause"] = {
                    "type": type(exc_value.__cause__).__name__,
                    "message": str(exc_value.__cause__),
                }

        self._remove_none_values(log_record)

    def _extract_stack_frames(self, tb, limit: int = 10) -> list[dict[str, Any]]:
        """Extract structured stack frame information."""
        frames = []
        if tb is None:
            return frames

        for frame_info in traceback.extract_tb(tb, limit=limit):
            frames.append({
                "file": frame_info.filename,
                "line": frame_info.lineno,
                "function": frame_info.name,
            })
        return frames

    def _remove_none_values(self, d: dict[str, Any]) -> None:
        """Recursively remove None values from dictionary."""
        keys_to_remove = []
        for key, value in d.items():
            if value is None:
                keys_to_remove.append(key)
            elif isinstance(value, dict):
                self._remove_none_values(value)
        for key in keys_to_remove:
            del d[key]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request logging and correlation.

    Generates (or propagates) the X-Request-ID header, stores it in the
    context for the formatter and logs request completion with timing.
    """

    # High-frequency probes are not logged in detail
    EXCLUDED_PATHS = {"/health", "/health/live", "/health/ready", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        logger = get_logger("request")
        should_log = request.url.path not in self.EXCLUDED_PATHS
        start_time = time.time()

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            if response.status_code >= 500:
                log_level = logging.ERROR
            elif response.status_code >= 400 or duration_ms > 5000:
                log_level = logging.WARNING
            else:
                log_level = logging.INFO

            if should_log:
                logger.log(
                    log_level,
                    f"Request completed: {request.method} {request.url.path} - "
                    f"{response.status_code} ({duration_ms:.2f}ms)",
                    extra={
                        "event": "request_complete",
                        "http": {
                            "method": request.method,
                            "path": request.url.path,
                            "status_code": response.status_code,
                        },
                        "timing": {"duration_ms": round(duration_ms, 2)},
                    },
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "event": "request_error",
                    "http": {"method": request.method, "path": request.url.path},
                    "timing": {"duration_ms": round(duration_ms, 2)},
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            raise

        finally:
            request_id_var.reset(token)


# Logger configuration by module
LOGGER_CONFIG: dict[str, int] = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.ERROR,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "apscheduler": logging.WARNING,
}


def setup_logging() -> None:
    """
    Configure application logging.

    JSON output for production, human-readable lines when
    LOG_FORMAT is anything other than "json".
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))

    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.LOG_FORMAT == "json":
        formatter = StructuredJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for logger_name, level in LOGGER_CONFIG.items():
        logging.getLogger(logger_name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    message: str,
    **extra_fields: Any,
) -> None:
    """
    Log a structured event with additional context.

    The ``event`` field is the stable identifier; tests and log
    pipelines match on it rather than on the message text.

    Args:
        logger: Logger instance to use
        level: Log level
        event: Event type identifier
        message: Human-readable message
        **extra_fields: Additional fields to include in log
    """
    logger.log(
        level,
        message,
        extra={"event": event, **extra_fields},
    )


def log_external_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int,
    duration_ms: float,
    success: bool = True,
    error: str | None = None,
) -> None:
    """
    Log an external API call with standard fields.

    Args:
        service: Name of external service (e.g., "nhtsa_ratings", "nhtsa_csv")
        endpoint: API endpoint called
        method: HTTP method
        status_code: Response status code (0 when no response was received)
        duration_ms: Call duration in milliseconds
        success: Whether call succeeded
        error: Error message if failed
    """
    logger = get_logger("external_api")

    extra = {
        "event": "external_api_call",
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
        "success": success,
    }

    if error:
        extra["error_message"] = error
        logger.warning(f"External API call to {service} failed", extra=extra)
    elif status_code >= 400:
        logger.info(f"External API call to {service} returned {status_code}", extra=extra)
    else:
        logger.debug(f"External API call to {service} completed", extra=extra)
