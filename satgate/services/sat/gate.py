"""Verification and one-time consumption of signed action tokens.

Checks run in a fixed order so every refusal carries the most specific code:
presence, decode, subject, feature, method/path binding, token id, and
finally the atomic claim in the replay ledger. Only the claim decides; the
earlier checks exist for diagnostics and to keep bad tokens away from the
store.
"""

from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.clock import TimeProvider, utc_now
from satgate.core.config import get_settings
from satgate.core.errors import StoreUnavailableError
from satgate.domain.sat import (
    DecodeError,
    SatAuthorized,
    SatDecision,
    SatDenied,
    SatErrorCode,
)
from satgate.persistence.repos import replay
from satgate.services.sat import codec


logger = logging.getLogger(__name__)


def _deny(
    code: SatErrorCode,
    message: str,
    *,
    reason: str | None = None,
    token_id: str | None = None,
) -> SatDenied:
    logger.info("sat_denied code=%s reason=%s token_id=%s", code.value, reason, token_id)
    return SatDenied(code=code, message=message, reason=reason, token_id=token_id)


class SatGate:
    def __init__(
        self,
        *,
        time_provider: TimeProvider | None = None,
        secret: str | None = None,
    ) -> None:
        self._time_provider = time_provider or utc_now
        self._secret = secret

    def now(self) -> datetime:
        return self._time_provider()

    async def verify_and_consume(
        self,
        *,
        session: AsyncSession,
        token: str | None,
        subject_id: str,
        feature: str,
        method: str,
        path: str,
        session_id: str | None = None,
        commit: bool = True,
    ) -> SatDecision:
        """Authorize one request with ``token`` and spend it.

        With ``commit=False`` the claim stays inside the caller's transaction
        so a later business refusal can roll it back together with any other
        writes. Raises :class:`ConfigurationError` when no secret is set and
        :class:`StoreUnavailableError` when the replay ledger cannot be
        reached; every other outcome is returned as a decision.
        """
        if not token:
            return _deny(SatErrorCode.TOKEN_REQUIRED, "Action token required")

        now = self._time_provider()
        decoded = codec.decode(
            token,
            now=now,
            secret=self._secret,
            leeway_s=get_settings().sat_clock_skew_s,
        )
        if isinstance(decoded, DecodeError):
            return _deny(
                SatErrorCode.TOKEN_INVALID,
                "Action token is invalid",
                reason=decoded.reason.value,
            )
        claims = decoded

        if claims.subject != subject_id:
            return _deny(
                SatErrorCode.SUBJECT_MISMATCH,
                "Action token belongs to another subject",
                token_id=claims.token_id,
            )
        # Tokens minted under a known session only work from that session.
        if claims.session_id and session_id and claims.session_id != session_id:
            return _deny(
                SatErrorCode.SUBJECT_MISMATCH,
                "Action token belongs to another session",
                reason="session",
                token_id=claims.token_id,
            )
        if claims.feature != feature:
            return _deny(
                SatErrorCode.FEATURE_FORBIDDEN,
                "Action token does not grant this feature",
                token_id=claims.token_id,
            )
        if claims.method != method.upper() or claims.path != path:
            return _deny(
                SatErrorCode.BINDING_MISMATCH,
                "Action token is bound to another request",
                reason="method" if claims.method != method.upper() else "path",
                token_id=claims.token_id,
            )
        if not claims.token_id:
            return _deny(SatErrorCode.MISSING_TOKEN_ID, "Action token has no identifier")

        try:
            claimed = await replay.claim(
                session,
                token_id=claims.token_id,
                subject_id=subject_id,
                method=claims.method,
                path=claims.path,
                now=now,
            )
            if claimed and commit:
                await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("sat_claim_store_failed token_id=%s", claims.token_id, exc_info=exc)
            raise StoreUnavailableError("replay ledger unavailable") from exc

        if not claimed:
            return _deny(
                SatErrorCode.REPLAYED_OR_EXPIRED,
                "Action token was already used or has expired",
                token_id=claims.token_id,
            )
        logger.info("sat_consumed token_id=%s subject=%s feature=%s", claims.token_id, subject_id, feature)
        return SatAuthorized(claims=claims)


_gate: SatGate | None = None


def get_gate() -> SatGate:
    global _gate
    if _gate is None:
        _gate = SatGate()
    return _gate


def set_gate(gate: SatGate | None) -> None:
    # Swap the shared gate for tests that move the clock.
    global _gate
    _gate = gate
