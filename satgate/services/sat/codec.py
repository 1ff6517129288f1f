"""HS256 encoding and decoding of signed action tokens.

Both directions are pure functions of their inputs and the secret. Decoding
never raises for bad input; it returns :class:`DecodeError` so the gate can
map each failure onto a refusal code.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import jwt

from satgate.core.clock import as_utc
from satgate.core.config import get_settings
from satgate.core.errors import ConfigurationError
from satgate.domain.sat import DecodeError, DecodeFailure, SatClaims


logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "feature", "htm", "htu", "iat", "exp"]


def resolve_secret(secret: str | None = None) -> str:
    # Fail closed: an absent secret must never turn into an unsigned or bypassed token.
    resolved = secret if secret is not None else get_settings().sat_jwt_secret
    if not resolved:
        raise ConfigurationError("SAT_JWT_SECRET is not configured")
    return resolved


def _epoch(value: datetime) -> int:
    return int(as_utc(value).timestamp())


def encode(claims: SatClaims, *, secret: str | None = None) -> str:
    key = resolve_secret(secret)
    payload: dict[str, Any] = {
        "sub": claims.subject,
        "feature": claims.feature,
        "htm": claims.method,
        "htu": claims.path,
        "iat": _epoch(claims.issued_at),
        "exp": _epoch(claims.expires_at),
    }
    if claims.token_id is not None:
        payload["jti"] = claims.token_id
    if claims.session_id is not None:
        payload["sid"] = claims.session_id
    return jwt.encode(payload, key, algorithm=ALGORITHM)


def _str_claim(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if isinstance(value, str) and value:
        return value
    return None


def decode(
    token: str,
    *,
    now: datetime,
    secret: str | None = None,
    leeway_s: int = 0,
) -> SatClaims | DecodeError:
    key = resolve_secret(secret)
    try:
        # Time checks run below against the injected clock, not PyJWT's wall clock.
        payload = jwt.decode(
            token,
            key,
            algorithms=[ALGORITHM],
            options={"require": _REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
        )
    except jwt.InvalidSignatureError:
        return DecodeError(DecodeFailure.BAD_SIGNATURE)
    except jwt.InvalidTokenError:
        return DecodeError(DecodeFailure.MALFORMED)

    subject = _str_claim(payload, "sub")
    feature = _str_claim(payload, "feature")
    method = _str_claim(payload, "htm")
    path = _str_claim(payload, "htu")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if subject is None or feature is None or method is None or path is None:
        return DecodeError(DecodeFailure.MALFORMED)
    if not isinstance(iat, int) or not isinstance(exp, int) or isinstance(iat, bool) or isinstance(exp, bool):
        return DecodeError(DecodeFailure.MALFORMED)

    issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    current = as_utc(now)
    if expires_at <= current:
        return DecodeError(DecodeFailure.EXPIRED)
    if issued_at > current + timedelta(seconds=max(leeway_s, 0)):
        logger.info("sat_decode_future_iat iat=%s", iat)
        return DecodeError(DecodeFailure.MALFORMED)

    return SatClaims(
        subject=subject,
        feature=feature,
        method=method,
        path=path,
        token_id=_str_claim(payload, "jti"),
        issued_at=issued_at,
        expires_at=expires_at,
        session_id=_str_claim(payload, "sid"),
    )
