from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.config import get_settings
from satgate.domain.models import User
from satgate.domain.sat import SatClaims, SatDenied
from satgate.persistence.db import get_session
from satgate.services.audit import record_event
from satgate.services.sat.gate import get_gate
from satgate.services.sessions import decode_session_token, normalize_role


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; closing without commit rolls back uncommitted claims.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    subject_id: str
    role: str
    session_id: str | None = None
    auth_method: str = "session"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal | None:
    # Allow header identities only when explicitly enabled for local dev.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    try:
        role = normalize_role(request.headers.get("X-Role", "athlete"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(subject_id=user_id, role=role, auth_method="dev_bypass")


async def _auth_failure(request: Request, db: AsyncSession, exc: HTTPException) -> HTTPException:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_event(
        session=db,
        request=request,
        actor_type="anonymous",
        actor_id=None,
        actor_role=None,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        metadata={"path": request.url.path, "method": request.method},
        error_code=detail.get("code"),
        commit=True,
        best_effort=True,
    )
    return exc


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    try:
        raw_token = _parse_bearer_token(request.headers.get(settings.auth_header))
    except HTTPException as exc:
        raise await _auth_failure(request, db, exc)
    raw_token = raw_token or request.cookies.get(settings.auth_session_cookie)

    if not raw_token:
        if settings.auth_dev_bypass:
            principal = _principal_from_dev_headers(request)
            if principal is not None:
                return principal
        raise await _auth_failure(request, db, _auth_error("Missing session"))

    identity = decode_session_token(raw_token)
    if identity is None:
        raise await _auth_failure(request, db, _auth_error("Invalid or expired session"))

    try:
        user = await db.get(User, identity.user_id)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if user is None or not user.is_active:
        raise await _auth_failure(request, db, _auth_error("Session user is unknown or inactive"))

    # The stored role wins over the session claim so demotions apply immediately.
    return Principal(subject_id=user.id, role=user.role, session_id=identity.session_id)


def sat_refusal_exception(decision: SatDenied) -> HTTPException:
    # Every gate refusal is a 403 with its own code; clients must not retry the same token.
    detail: dict[str, str] = {"code": decision.code.value, "message": decision.message}
    if decision.reason:
        detail["reason"] = decision.reason
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def enforce_sat(
    *,
    request: Request,
    principal: Principal,
    db: AsyncSession,
    feature: str,
    commit: bool = True,
) -> SatClaims:
    """Run the action-token gate for the current request or raise 403.

    Routes that write pass ``commit=False`` so the claim and the business
    write commit together; any later refusal must roll the session back.
    """
    token = request.headers.get(get_settings().sat_header)
    decision = await get_gate().verify_and_consume(
        session=db,
        token=token,
        subject_id=principal.subject_id,
        feature=feature,
        method=request.method,
        path=request.url.path,
        session_id=principal.session_id,
        commit=commit,
    )
    if isinstance(decision, SatDenied):
        await db.rollback()
        await record_event(
            session=db,
            request=request,
            actor_type="user",
            actor_id=principal.subject_id,
            actor_role=principal.role,
            event_type="sat.denied",
            outcome="failure",
            resource_type="sat",
            resource_id=decision.token_id,
            metadata={"feature": feature, "reason": decision.reason, "path": request.url.path},
            error_code=decision.code.value,
            commit=True,
            best_effort=True,
        )
        raise sat_refusal_exception(decision)
    # Uncommitted claims carry their audit row along, so a rollback drops both.
    await record_event(
        session=db,
        request=request,
        actor_type="user",
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type="sat.consumed",
        outcome="success",
        resource_type="sat",
        resource_id=decision.claims.token_id,
        metadata={"feature": feature, "path": request.url.path},
        commit=commit,
        best_effort=True,
    )
    return decision.claims
