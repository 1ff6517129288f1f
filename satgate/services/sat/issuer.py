from __future__ import annotations

from datetime import datetime, timedelta
import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.clock import TimeProvider, utc_now
from satgate.core.config import get_settings
from satgate.core.errors import StoreUnavailableError
from satgate.domain.sat import ALLOWED_METHODS, IssuedToken, SatClaims
from satgate.persistence.repos import replay
from satgate.services.sat import codec


logger = logging.getLogger(__name__)


def normalize_method(method: str | None) -> str | None:
    normalized = (method or "").strip().upper()
    if normalized not in ALLOWED_METHODS:
        return None
    return normalized


def normalize_path(path: str | None) -> str | None:
    """Reduce a requested path to the form the gate compares against.

    Query strings and fragments are dropped because the gate binds to the
    request path only. Anything that is not an absolute path is rejected.
    """
    raw = (path or "").strip()
    for separator in ("?", "#"):
        raw = raw.split(separator, 1)[0]
    if not raw.startswith("/") or raw.startswith("//"):
        return None
    if any(char.isspace() for char in raw):
        return None
    return raw


class SatIssuer:
    def __init__(
        self,
        *,
        time_provider: TimeProvider | None = None,
        ttl_s: int | None = None,
        secret: str | None = None,
    ) -> None:
        # Allow injecting time and TTL for deterministic expiry tests.
        self._time_provider = time_provider or utc_now
        self._ttl_s = ttl_s
        self._secret = secret

    def now(self) -> datetime:
        return self._time_provider()

    async def issue(
        self,
        *,
        session: AsyncSession,
        subject_id: str,
        feature: str,
        method: str,
        path: str,
        session_id: str | None = None,
    ) -> IssuedToken:
        # Resolve the secret first so nothing is persisted for an unsignable token.
        secret = codec.resolve_secret(self._secret)
        ttl_s = self._ttl_s if self._ttl_s is not None else get_settings().sat_ttl_s
        issued_at = self._time_provider().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=max(ttl_s, 1))
        token_id = str(uuid4())
        claims = SatClaims(
            subject=subject_id,
            feature=feature,
            method=method,
            path=path,
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
            session_id=session_id,
        )
        token = codec.encode(claims, secret=secret)
        try:
            await replay.insert_pending(
                session,
                token_id=token_id,
                subject_id=subject_id,
                feature=feature,
                method=method,
                path=path,
                issued_at=issued_at,
                expires_at=expires_at,
                session_id=session_id,
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("sat_issue_store_failed subject=%s feature=%s", subject_id, feature, exc_info=exc)
            raise StoreUnavailableError("replay ledger unavailable") from exc

        logger.info(
            "sat_issued token_id=%s subject=%s feature=%s method=%s path=%s",
            token_id,
            subject_id,
            feature,
            method,
            path,
        )
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)


_issuer: SatIssuer | None = None


def get_issuer() -> SatIssuer:
    global _issuer
    if _issuer is None:
        _issuer = SatIssuer()
    return _issuer


def set_issuer(issuer: SatIssuer | None) -> None:
    # Swap the shared issuer for tests that control time or TTL.
    global _issuer
    _issuer = issuer
