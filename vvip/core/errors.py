"""Error normalization and handlers."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from vvip.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class ConfigurationError(AppError):
    """Payment system is not configured; never retried."""
    code = "billing_unavailable"
    status_code = 503


class ProcessorUnavailableError(ConfigurationError):
    def __init__(self, message: str = "Payment system unavailable", **kwargs):
        super().__init__(message, **kwargs)


class PriceNotConfiguredError(ConfigurationError):
    code = "price_not_configured"


class UnknownPlanError(ValidationError):
    code = "invalid_plan"


class SamePlanError(ValidationError):
    code = "same_plan"


class NoActiveSubscriptionError(ValidationError):
    code = "no_active_subscription"


class CommitmentActiveError(AppError):
    """Cancellation refused inside the minimum commitment window."""
    code = "commitment_active"
    status_code = 403

    def __init__(self, remaining_days: int, commitment_until: datetime, **kwargs):
        message = (
            "Cancellation is not possible during the minimum commitment period. "
            f"{remaining_days} day(s) remaining (until {commitment_until.date().isoformat()})."
        )
        super().__init__(
            message,
            details={
                "remaining_days": remaining_days,
                "commitment_until": commitment_until.isoformat(),
            },
            **kwargs,
        )
        self.remaining_days = remaining_days
        self.commitment_until = commitment_until


class PaymentNotConfirmedError(ConflictError):
    code = "payment_not_confirmed"


class ProcessorError(AppError):
    """Stripe call failed; message is passed through for display."""
    code = "processor_error"
    status_code = 502


class PaymentRejectedError(ProcessorError):
    code = "payment_rejected"
    status_code = 402


class InvalidSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    payload = {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }
    if details:
        payload["error"].update(details)
        payload.update(details)
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("vvip")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    if exc.status_code == 401:
        code = "unauthorized"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("vvip")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("vvip")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
