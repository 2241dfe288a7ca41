import json
import logging
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

REQUEST_ID_HEADER = "X-Request-ID"

# Headers whose values never reach the log stream
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "x-razorpay-signature"}

# Health checks logged at debug so they don't drown real traffic
QUIET_PATHS = {"/health"}

CONTEXT_FIELDS = (
    "request_id", "user_id", "method", "path", "status_code", "duration_ms", "headers",
    "order_id", "order_number", "return_number", "event", "job",
)

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestContextFilter(logging.Filter):
    """Stamps the current request id on records logged by services."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = request_id_var.get()
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    # uvicorn's access log duplicates RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").propagate = False

    return logging.getLogger(service_name)


def mask_headers(request: Request) -> dict:
    return {k: "***" if k.lower() in SENSITIVE_HEADERS else v for k, v in request.headers.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per request.

    Reuses the caller's ``X-Request-ID`` or mints one, makes it visible to
    every log record written while the request is handled and echoes it on
    the response.
    """

    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, exc_info=sys.exc_info())
            raise
        finally:
            request_id_var.reset(token)

        self.log_request(request, response.status_code, started)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, exc_info=None):
        extra = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "headers": mask_headers(request),
            # Set by the auth dependency once the bearer token is resolved
            "user_id": getattr(request.state, "user_id", None),
        }
        message = f"{request.method} {request.url.path} {status_code}"

        if status_code >= 500:
            self.logger.error(message, extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning(message, extra=extra)
        elif request.url.path in QUIET_PATHS:
            self.logger.debug(message, extra=extra)
        else:
            self.logger.info(message, extra=extra)
