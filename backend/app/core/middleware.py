"""
Request middleware for the communication API.

Each request is tagged with an X-Request-ID (the caller's, if sent) that
lands in the logging context, so the dispatcher, ledger and classifier
lines for one send share it. Send routes also put their channel in the
context and the access line.

Sends can sit in retry backoff for tens of seconds, so the elapsed time
goes back as X-Process-Time and requests slower than SLOW_REQUEST_MS are
logged at WARNING.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

SEND_PREFIX = "/api/v1/communication/"
SEND_ROUTES = frozenset({"email", "sms", "whatsapp", "telegram", "send"})
SLOW_REQUEST_MS = 5000.0

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def channel_for_path(path: str) -> Optional[str]:
    """Channel named by a send route, "send" for the unified one, else None."""
    if not path.startswith(SEND_PREFIX):
        return None
    tail = path[len(SEND_PREFIX):].strip("/")
    return tail if tail in SEND_ROUTES else None


def access_log_level(status_code: int, duration_ms: float) -> int:
    if status_code >= 400 or duration_ms >= SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag, time and log each request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        context = {
            "request_id": request_id,
            "client_ip": request.client.host if request.client else "unknown",
            "endpoint": path,
            "method": request.method,
        }
        channel = channel_for_path(path)
        if channel is not None:
            context["channel"] = channel
        set_request_context(**context)

        log_extra = {"endpoint": path}
        if channel is not None:
            log_extra["channel"] = channel
        start = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                elapsed = (time.perf_counter() - start) * 1000
                logger.error(
                    "%s %s → 500 (%.1fms) [%s]",
                    request.method, path, elapsed, context["client_ip"],
                    extra={**log_extra, "duration_ms": elapsed, "status_code": 500},
                )
                raise

            elapsed = (time.perf_counter() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                logger.log(
                    access_log_level(response.status_code, elapsed),
                    "%s %s → %d (%.1fms) [%s]",
                    request.method, path, response.status_code, elapsed, context["client_ip"],
                    extra={**log_extra, "duration_ms": elapsed, "status_code": response.status_code},
                )
            return response
        finally:
            set_request_context()
