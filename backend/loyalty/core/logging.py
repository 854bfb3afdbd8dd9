from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from typing import Any, Dict

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Structured fields are passed as ``extra={"extra": {...}}`` and merged into
    the top-level payload.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)  # type: ignore[arg-type]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure application-wide structured logging."""

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    # Remove default handlers that may have been set by libraries.
    root.handlers.clear()
    root.addHandler(handler)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware that adds correlation IDs and basic request logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers["X-Request-ID"] = correlation_id
        logging.getLogger("loyalty.request").info(
            "HTTP request",
            extra={
                "extra": {
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int(duration * 1000),
                }
            },
        )
        return response


def log_fields(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Emit a log line with structured fields in the JSON payload."""

    logger.log(level, message, extra={"extra": fields})


__all__ = ["JsonFormatter", "configure_logging", "RequestContextMiddleware", "log_fields"]
