"""Custom exceptions and RFC 7807 Problem Detail error handlers."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from hr_leave.common.constants import LeaveResultCode
from hr_leave.config import settings

BASE_ERROR_URI = "https://hr-leave.local/errors"

logger = logging.getLogger(__name__)


# ── Exception hierarchy ─────────────────────────────────────────────

class AppException(Exception):
    """Base for all application exceptions → RFC 7807 JSON."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        title: str,
        detail: str,
        errors: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.title = title
        self.detail = detail
        self.errors = errors
        super().__init__(detail)


class NotFoundException(AppException):
    """404 — entity not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=404,
            error_type="not-found",
            title=f"{entity_type} Not Found",
            detail=f"{entity_type} with id '{entity_id}' does not exist.",
        )


class UnauthorizedException(AppException):
    """401 — missing, invalid or expired credentials."""

    def __init__(self, detail: str = "Authentication required.") -> None:
        super().__init__(
            status_code=401,
            error_type="unauthorized",
            title="Unauthorized",
            detail=detail,
        )


class ForbiddenException(AppException):
    """403 — insufficient permissions."""

    def __init__(
        self,
        detail: str = "You do not have permission to perform this action.",
    ) -> None:
        super().__init__(
            status_code=403,
            error_type="forbidden",
            title="Forbidden",
            detail=detail,
        )


class ValidationException(AppException):
    """422 — business-logic validation failures."""

    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__(
            status_code=422,
            error_type="validation-error",
            title="Validation Error",
            detail="One or more fields failed validation.",
            errors=errors,
        )


class InvalidDateRangeException(ValidationException):
    """422 — end date before start date."""

    def __init__(self, start: Any, end: Any) -> None:
        super().__init__(
            {"end_date": [f"End date {end} is before start date {start}."]}
        )


class InsufficientBalanceException(AppException):
    """422 — a ledger deduction would take the balance below zero."""

    def __init__(
        self,
        leave_type: str,
        available_hours: Any,
        requested_hours: Any,
    ) -> None:
        self.leave_type = leave_type
        self.available_hours = available_hours
        self.requested_hours = requested_hours
        super().__init__(
            status_code=422,
            error_type="insufficient-balance",
            title="Insufficient Balance",
            detail=(
                f"Insufficient {leave_type} balance. "
                f"Available: {available_hours}h, Requested: {requested_hours}h."
            ),
            errors={"code": [LeaveResultCode.insufficient_balance.value]},
        )


# HTTP status for each domain result code
_RESULT_CODE_STATUS: dict[LeaveResultCode, int] = {
    LeaveResultCode.insufficient_balance: 422,
    LeaveResultCode.overlapping_leave: 409,
    LeaveResultCode.casual_cannot_take_paid_leave: 422,
    LeaveResultCode.not_authorized: 403,
    LeaveResultCode.employee_not_found: 404,
    LeaveResultCode.already_decided: 409,
    LeaveResultCode.not_eligible: 422,
    LeaveResultCode.request_not_found: 404,
    LeaveResultCode.leave_already_started: 422,
}


class LeaveRuleViolation(AppException):
    """A domain-rule result code surfaced over HTTP."""

    def __init__(self, code: LeaveResultCode, detail: str) -> None:
        self.code = code
        super().__init__(
            status_code=_RESULT_CODE_STATUS.get(code, 422),
            error_type=code.value.lower().replace("_", "-"),
            title=code.value.replace("_", " ").title(),
            detail=detail,
            errors={"code": [code.value]},
        )


class ServiceUnavailableException(AppException):
    """503 — persistence unavailable; the caller should retry."""

    def __init__(self, detail: str = "The leave store is temporarily unavailable.") -> None:
        super().__init__(
            status_code=503,
            error_type="service-unavailable",
            title="Service Unavailable",
            detail=detail,
        )


# ── RFC 7807 builder ────────────────────────────────────────────────

def _build_problem_detail(exc: AppException, request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": f"{BASE_ERROR_URI}/{exc.error_type}",
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
    }
    if exc.errors:
        body["errors"] = exc.errors
    if exc.status_code == 503:
        body["retryable"] = True
    return body


# ── FastAPI handlers ────────────────────────────────────────────────

async def _handle_app_exception(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    headers = None
    if exc.status_code == 503:
        headers = {"Retry-After": str(settings.RETRY_AFTER_SECONDS)}
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_problem_detail(exc, request),
        media_type="application/problem+json",
        headers=headers,
    )


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = err.get("loc", ())
        name = (
            ".".join(str(p) for p in loc[1:])
            if len(loc) > 1
            else str(loc[0]) if loc else "unknown"
        )
        field_errors.setdefault(name, []).append(err.get("msg", "Invalid value"))

    return JSONResponse(
        status_code=422,
        content={
            "type": f"{BASE_ERROR_URI}/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "Request validation failed.",
            "instance": str(request.url.path),
            "errors": field_errors,
        },
        media_type="application/problem+json",
    )


async def _handle_store_unavailable(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return await _handle_app_exception(request, ServiceUnavailableException())


# ── Registration helper (called from main.py) ──────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""
    app.add_exception_handler(AppException, _handle_app_exception)          # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(OperationalError, _handle_store_unavailable)  # type: ignore[arg-type]
    app.add_exception_handler(InterfaceError, _handle_store_unavailable)    # type: ignore[arg-type]
