from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from orgaccess.apps.api.response import error_response
from orgaccess.core.errors import (
    ConflictError,
    CycleDetectedError,
    InvalidSharingRuleError,
    NotFoundError,
    OrgAccessError,
    StructuralIntegrityError,
    TenantViolationError,
    error_code_for,
)
from orgaccess.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# Most specific first: CycleDetectedError and friends all derive from OrgAccessError.
_ERROR_STATUS: tuple[tuple[type[OrgAccessError], int], ...] = (
    (TenantViolationError, status.HTTP_403_FORBIDDEN),
    (CycleDetectedError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidSharingRuleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StructuralIntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _unpack_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException with detail={"code", "message", **extra} or a bare string.
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, str):
        return fallback, detail, None
    if not isinstance(detail, dict):
        return fallback, "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None


def status_for(error: OrgAccessError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _unpack_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def orgaccess_exception_handler(request: Request, exc: OrgAccessError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        # Corrupt graphs are operator problems; keep the detail out of the response body.
        logger.error("structural_integrity_error path=%s error=%s", request.url.path, exc)
        message = "Access graph failed an integrity check"
    else:
        message = str(exc)
    payload = error_response(request=request, code=error_code_for(exc), message=message)
    return JSONResponse(content=payload, status_code=status_code)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    payload = error_response(request=request, code="TENANT_PREDICATE_REQUIRED", message=str(exc))
    return JSONResponse(content=payload, status_code=status.HTTP_400_BAD_REQUEST)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Log the traceback server side; the client only sees INTERNAL_ERROR.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Pydantic error contexts may carry exception instances; keep only JSON-safe fields.
    return [
        {"loc": list(item.get("loc", ())), "msg": str(item.get("msg", "")), "type": str(item.get("type", ""))}
        for item in exc.errors()
    ]


def forbidden(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"code": code, "message": message})
