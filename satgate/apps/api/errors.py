from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from satgate.apps.api.response import error_response, is_versioned_request
from satgate.core.errors import ConfigurationError, SessionNotConfiguredError, StoreUnavailableError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    telemetry = getattr(request.state, "rate_limit_headers", None)
    if telemetry:
        headers = {**telemetry, **(headers or {})}
    if not is_versioned_request(request):
        payload: dict[str, Any] = {"detail": {"code": code, "message": message, **(details or {})}}
    else:
        payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own 404/405 for unknown routes; wrap them too.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _render(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    # A missing secret is fatal for the protected route; never degrade to allow.
    logger.error("configuration_error path=%s error=%s", request.url.path, exc)
    if isinstance(exc, SessionNotConfiguredError):
        return _render(
            request,
            status_code=503,
            code="AUTH_NOT_CONFIGURED",
            message="Sessions are not configured",
        )
    return _render(
        request,
        status_code=503,
        code="SAT_NOT_CONFIGURED",
        message="Action tokens are not configured",
    )


async def store_unavailable_exception_handler(
    request: Request, exc: StoreUnavailableError
) -> JSONResponse:
    logger.error("store_unavailable path=%s error=%s", request.url.path, exc)
    return _render(
        request,
        status_code=503,
        code="SAT_STORE_UNAVAILABLE",
        message="Replay ledger unavailable",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _render(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
