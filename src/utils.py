"""
Telemetry Gateway Utilities
Shared utilities for logging, request tracking, clocks, and error handling.
"""

import asyncio
import errno
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import orjson
import structlog
from fastapi.responses import JSONResponse

logger = structlog.get_logger()


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the whole process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(serializer=orjson.dumps),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.BytesLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def generate_request_id() -> str:
    """Generate unique request ID."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with milliseconds and a Z suffix."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())


class RequestContextMiddleware:
    """Middleware to inject request_id into all logs and record request latency."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = generate_request_id()
        scope["request_id"] = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        tracker = LatencyTracker()
        tracker.start()
        status_holder = {"status_code": 500}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["status_code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            log_request(
                request_id,
                scope.get("method", ""),
                scope.get("path", ""),
                status_holder["status_code"],
                tracker.elapsed_ms(),
            )


def error_response(
    status_code: int,
    message: str,
    error: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Build standardized error response."""
    content: Dict[str, Any] = {
        "success": False,
        "message": message,
    }
    if error:
        content["error"] = error
    if details:
        content["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content
    )


class LatencyTracker:
    """Track request latency."""

    def __init__(self):
        self.start_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.perf_counter()

    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds."""
        if self.start_time is None:
            return 0.0
        return (time.perf_counter() - self.start_time) * 1000


_ERRNO_REASONS = {
    errno.ENOSPC: "disk_full",
    errno.EACCES: "permission_denied",
    errno.EPERM: "permission_denied",
    errno.EROFS: "read_only_filesystem",
    errno.ENOENT: "missing_directory",
}


def classify_write_error(exception: BaseException) -> str:
    """
    Classify a file write failure into a short reason for structured logging.

    Args:
        exception: The exception raised by the writer

    Returns:
        A snake_case reason such as "disk_full" or "permission_denied"
    """
    if isinstance(exception, OSError):
        reason = _ERRNO_REASONS.get(exception.errno)
        if reason:
            return reason
        return "io_error"
    if isinstance(exception, asyncio.CancelledError):
        return "cancelled"
    if isinstance(exception, (TypeError, ValueError)):
        return "serialization_error"
    return f"unknown_error_{type(exception).__name__}"


def log_request(
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
):
    """
    Log structured request information.

    Args:
        request_id: Unique request identifier
        method: HTTP method
        path: Request path
        status_code: Response status code
        latency_ms: Request latency in milliseconds
    """
    log_data = {
        "request_id": request_id,
        "method": method,
        "path": path,
        "status_code": status_code,
        "latency_ms": round(latency_ms, 2),
    }

    if status_code < 500:
        logger.info("request_completed", **log_data)
    else:
        logger.error("request_failed", **log_data)
