from __future__ import annotations

from typing import Any

from satgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _documented(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _documented("Bad request", code="BAD_REQUEST", message="Bad request"),
    401: _documented("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid session"),
    422: _documented("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _documented("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

ISSUANCE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _documented("Feature not entitled", code="SAT_NOT_ENTITLED", message="Feature requires an upgrade"),
    429: _documented(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"limit_name": "sat", "limit": 20, "remaining": 0, "reset": 1760000040, "retry_after_s": 12},
    ),
    503: _documented("Signing not configured", code="SAT_NOT_CONFIGURED", message="Action tokens are not configured"),
}

PROTECTED_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    402: _documented(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="Daily message quota exceeded",
        details={"scope": "daily", "limit": 20, "used": 20, "remaining": 0},
    ),
    403: _documented(
        "Action token refused",
        code="SAT_REPLAYED_OR_EXPIRED",
        message="Action token was already used or has expired",
    ),
    404: _documented("Not found", code="COACH_NOT_FOUND", message="Coach not found"),
    429: _documented("Rate limited", code="RATE_LIMITED", message="Rate limit exceeded"),
    503: _documented("Replay ledger unavailable", code="SAT_STORE_UNAVAILABLE", message="Replay ledger unavailable"),
}
