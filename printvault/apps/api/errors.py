from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from printvault.apps.api.response import error_response
from printvault.core.errors import PrintVaultError


logger = logging.getLogger(__name__)

# Domain error codes grouped by the HTTP status clients see.
_CODES_BY_STATUS: dict[int, tuple[str, ...]] = {
    404: ("NOT_FOUND",),
    403: ("QUOTA_EXCEEDED", "MACHINE_MISMATCH", "INVALID_SIGNATURE"),
    409: (
        "CONFLICT",
        "ALREADY_USED",
        "ALREADY_IN_FLIGHT",
        "NOT_FETCHED",
        "INCOMPLETE",
        "INVALID_TRANSITION",
    ),
    410: ("EXPIRED",),
    422: ("INVALID_LAYOUT",),
    502: ("UPSTREAM_FAILURE", "RASTERIZATION_FAILED"),
    503: ("FEATURE_DISABLED", "PROVIDER_CONFIG_ERROR"),
}
_STATUS_BY_CODE = {code: status for status, codes in _CODES_BY_STATUS.items() for code in codes}

# Framework-raised HTTP errors that carry no code of their own.
_FRAMEWORK_CODES = {
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    422: "VALIDATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def status_for_error(exc: PrintVaultError) -> int:
    return _STATUS_BY_CODE.get(exc.code, 500)


def _framework_code(status_code: int) -> str:
    if status_code in _FRAMEWORK_CODES:
        return _FRAMEWORK_CODES[status_code]
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return "UNKNOWN_ERROR"


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=body, status_code=status_code, headers=headers)


async def printvault_error_handler(request: Request, exc: PrintVaultError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    details = jsonable_encoder(exc.context) or None
    return _envelope(request, status_code, exc.code, exc.message, details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes raise HTTPException(detail={"code", "message", ...}) for auth failures.
    detail = exc.detail
    code = _framework_code(exc.status_code)
    message = "Request failed"
    details = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or message)
        details = {key: value for key, value in detail.items() if key not in ("code", "message")} or None
    elif isinstance(detail, str):
        message = detail
    return _envelope(request, exc.status_code, code, message, details, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
