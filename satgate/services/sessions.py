from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import jwt

from satgate.core.config import get_settings
from satgate.core.errors import SessionNotConfiguredError


SESSION_ALGORITHM = "HS256"
ROLES = {"athlete", "coach", "admin"}


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    role: str
    session_id: str | None


def normalize_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def _secret() -> str:
    secret = get_settings().session_secret
    if not secret:
        raise SessionNotConfiguredError("SESSION_SECRET is not configured")
    return secret


def encode_session_token(
    *,
    user_id: str,
    role: str,
    session_id: str | None = None,
    ttl: timedelta = timedelta(hours=12),
    now: datetime | None = None,
) -> str:
    # Mirror the external session layer so scripts and tests can mint bearer sessions.
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": normalize_role(role),
        "sid": session_id or uuid4().hex,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + ttl).timestamp()),
    }
    return jwt.encode(payload, _secret(), algorithm=SESSION_ALGORITHM)


def decode_session_token(token: str) -> SessionIdentity | None:
    # Sessions are opaque to the core; all it needs is subject, role and session id.
    try:
        payload = jwt.decode(
            token,
            _secret(),
            algorithms=[SESSION_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError:
        return None
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        return None
    try:
        role = normalize_role(str(payload.get("role") or "athlete"))
    except ValueError:
        return None
    session_id = payload.get("sid")
    return SessionIdentity(
        user_id=subject,
        role=role,
        session_id=session_id if isinstance(session_id, str) else None,
    )
