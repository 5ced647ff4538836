"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • API-facing exceptions (validation, delivery failure)
    • Transport failure taxonomy raised by channel transports
    • Internal failures that are logged but never surfaced
      (ledger writes, event publication)
    • Consistent JSON error response format

Usage:
    from backend.app.core.errors import (
        ValidationError,
        DeliveryFailedError,
        RateLimitError,
        register_error_handlers,
    )

    raise ValidationError("to", "Invalid recipient email format")
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# API Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class CommunicationServiceError(Exception):
    """Base exception for all errors that reach the API caller."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(CommunicationServiceError):
    """Caller payload is malformed (422). Raised before any transport call."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            message=reason,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details={"field": field, "reason": reason},
        )
        self.field = field
        self.reason = reason


class DeliveryFailedError(CommunicationServiceError):
    """
    A send settled as failed (502).

    Carries only the sanitised user message and the correlation id; the
    classification detail stays in the server-side log.
    """

    def __init__(
        self,
        channel: str,
        user_message: str,
        correlation_id: str,
        timestamp: Optional[str] = None,
    ):
        super().__init__(
            message=user_message,
            status_code=502,
            error_code="DELIVERY_FAILED",
        )
        self.channel = channel
        self.user_message = user_message
        self.correlation_id = correlation_id
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# Transport Failures
# ═══════════════════════════════════════════════════════════════════════════

class TransportError(Exception):
    """
    Failure reported by a channel transport.

    ``status_code`` is the provider's HTTP status when there is one;
    ``code`` is a low-level error code such as ``ECONNREFUSED``.
    """

    default_status: Optional[int] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response_body: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status
        self.code = code
        self.response_body = response_body


class AuthError(TransportError):
    default_status = 401


class BadRequestError(TransportError):
    default_status = 400


class NotFoundError(TransportError):
    default_status = 404


class RateLimitError(TransportError):
    default_status = 429


class NetworkError(TransportError):
    """DNS failure, refused connection, socket timeout."""


class RetryStoppedError(Exception):
    """The retry loop gave up; wraps the last provider error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException, reason: str):
        super().__init__(f"{operation} {reason} after {attempts} attempts. Last error: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class RetryExhaustedError(RetryStoppedError):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(operation, attempts, last_error, "failed")


class NonRetryableError(RetryStoppedError):
    """An attempt failed with an error that another attempt cannot fix."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(operation, attempts, last_error, "stopped on a terminal error")


# ═══════════════════════════════════════════════════════════════════════════
# Internal Failures (logged, never propagated to the caller)
# ═══════════════════════════════════════════════════════════════════════════

class LedgerWriteError(Exception):
    """A delivery record could not be appended to the ledger."""


class PublishError(Exception):
    """An outcome event could not be handed to the reward tracker."""


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(DeliveryFailedError)
    async def handle_delivery_failed(request: Request, exc: DeliveryFailedError):
        # Caller only learns that it failed, why in plain words, and the id.
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {
                    "id": exc.correlation_id,
                    "message": exc.user_message,
                    "timestamp": exc.timestamp,
                },
            },
        )

    @app.exception_handler(CommunicationServiceError)
    async def handle_service_error(request: Request, exc: CommunicationServiceError):
        logger.warning(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
