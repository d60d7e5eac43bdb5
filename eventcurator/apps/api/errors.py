from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from eventcurator.apps.api.response import error_response
from eventcurator.core.errors import (
    ConcurrencyConflictError,
    CuratorError,
    InvalidTransitionError,
    NotFoundError,
    UnknownBudgetDimensionError,
    ValidationError,
)
from eventcurator.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[CuratorError], int, str], ...] = (
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (ConcurrencyConflictError, 409, "CONCURRENCY_CONFLICT"),
    (UnknownBudgetDimensionError, 422, "UNKNOWN_BUDGET_DIMENSION"),
    (ValidationError, 422, "VALIDATION_ERROR"),
)

_DETAIL_ATTRS = ("resource_type", "resource_id", "current", "target", "platform", "dimension")


def _domain_details(exc: CuratorError) -> dict[str, Any] | None:
    details = {
        name: getattr(exc, name) for name in _DETAIL_ATTRS if getattr(exc, name, None) is not None
    }
    return jsonable_encoder(details) or None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def curator_exception_handler(request: Request, exc: CuratorError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            payload = error_response(
                request=request, code=code, message=str(exc), details=_domain_details(exc)
            )
            return JSONResponse(content=payload, status_code=status_code)
    # Blob and database failures stay opaque to callers.
    logger.error("unmapped_domain_error type=%s", type(exc).__name__, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    payload = error_response(request=request, code="TENANT_REQUIRED", message=str(exc))
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
