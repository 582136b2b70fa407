"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from recipe_credits.core.logging import LOGGER_NAME, get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class InsufficientBalanceError(AppError):
    """Balance is below the requested debit amount. Nothing was written."""
    code = "insufficient_balance"
    status_code = 402


class SubscriptionNotActiveError(AppError):
    """Debits are only allowed while the subscription is active or trialing."""
    code = "subscription_not_active"
    status_code = 403


class ConflictError(AppError):
    """Concurrent writers kept winning the conditional update; safe to retry."""
    code = "conflict"
    status_code = 409


class DuplicateReferenceError(AppError):
    """A generation with this reference was already debited. Nothing was written."""
    code = "duplicate_reference"
    status_code = 409


class InvalidSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {"error": error, "detail": message}


def _json_error(status_code: int, payload: dict, request_id: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    return _json_error(exc.status_code, payload, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "not_found"
    elif exc.status_code == 401:
        code = "unauthorized"
    elif exc.status_code == 403:
        code = "forbidden"
    else:
        code = "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logging.getLogger(LOGGER_NAME).warning(
        "http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code}
    )
    return _json_error(exc.status_code, payload, rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    # Pydantic error entries can carry raw exception objects in "ctx"
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    payload = _error_payload("validation_error", "Invalid request body", rid, {"errors": errors})
    logging.getLogger(LOGGER_NAME).warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400}
    )
    return _json_error(400, payload, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logging.getLogger(LOGGER_NAME).error(
        "unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"}
    )
    payload = _error_payload("internal_error", "Unexpected error", rid)
    return _json_error(500, payload, rid)
