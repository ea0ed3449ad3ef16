from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ragrelay.apps.api.response import error_response
from ragrelay.core.errors import (
    AuthError,
    IndexUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    RelayError,
    TenantIsolationError,
    TerminalDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from ragrelay.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

# Fallback codes for framework-raised HTTP errors that carry no code of their own.
_CODES_BY_STATUS: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; subclasses inherit their parent's status.
_STATUS_BY_ERROR: tuple[tuple[type[RelayError], int], ...] = (
    (AuthError, 401),
    (TenantIsolationError, 403),
    (NotFoundError, 404),
    (ValidationError, 400),
    (InvalidTransitionError, 409),
    (IndexUnavailableError, 503),
    (TransientDeliveryError, 503),
    (TerminalDeliveryError, 502),
)


def status_for_error(exc: RelayError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _unpack_http_detail(status_code: int, detail: Any) -> tuple[str, str, dict[str, Any] | None]:
    fallback = _CODES_BY_STATUS.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return fallback, detail, None
    if not isinstance(detail, dict):
        return fallback, "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    # Boundary errors are answered once here and never retried.
    status_code = status_for_error(exc)
    payload = error_response(request=request, code=exc.code, message=exc.message, hint=exc.hint)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI's HTTPException and router-level 404/405s.
    code, message, details = _unpack_http_detail(exc.status_code, exc.detail)
    return JSONResponse(
        content=error_response(request=request, code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed callback and request bodies are client errors, reported with field details.
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Malformed request payload",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=400)


async def tenant_predicate_error_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # Missing tenant scope is a server fault; never fall through to an unscoped query.
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message=exc.message)
    return JSONResponse(content=payload, status_code=500)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_error_handler)
    # 500s never leak a stack trace.
    app.add_exception_handler(Exception, unexpected_error_handler)
