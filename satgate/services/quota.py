from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.clock import TimeProvider, utc_day_end, utc_day_start, utc_now
from satgate.core.config import get_settings
from satgate.domain.models import User
from satgate.persistence.repos import messages as messages_repo
from satgate.services.entitlements import EntitlementResolver, get_entitlement_resolver


logger = logging.getLogger(__name__)

SCOPE_DAILY = "daily"
SCOPE_TRIAL = "trial"


@dataclass(frozen=True)
class QuotaSnapshot:
    # Capture limit and usage for header rendering and refusals; None limit means unlimited.
    limit: int | None
    used: int | None
    remaining: int | None

    @property
    def unlimited(self) -> bool:
        return self.limit is None


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    snapshot: QuotaSnapshot
    scope: str = SCOPE_DAILY


def _snapshot(limit: int | None, used: int | None) -> QuotaSnapshot:
    # Compute remaining values while preserving unlimited semantics.
    if limit is None:
        return QuotaSnapshot(limit=None, used=None, remaining=None)
    used = used or 0
    return QuotaSnapshot(limit=limit, used=used, remaining=max(limit - used, 0))


class QuotaLedger:
    def __init__(
        self,
        *,
        resolver: EntitlementResolver | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        # Allow time injection for deterministic day-rollover tests.
        self._resolver = resolver or get_entitlement_resolver()
        self._time_provider = time_provider or utc_now

    def now(self) -> datetime:
        return self._time_provider()

    async def current_usage(
        self,
        session: AsyncSession,
        *,
        subject_id: str,
        resource_id: str | None,
        day: datetime,
    ) -> int:
        return await messages_repo.count_messages(
            session,
            user_id=subject_id,
            coach_id=resource_id,
            since=utc_day_start(day),
            until=utc_day_end(day),
        )

    async def remaining(
        self,
        session: AsyncSession,
        *,
        subject_id: str,
        resource_id: str | None,
        day: datetime | None = None,
    ) -> int | None:
        snapshot = await self.snapshot(session, subject_id=subject_id, resource_id=resource_id, day=day)
        return snapshot.remaining

    async def snapshot(
        self,
        session: AsyncSession,
        *,
        subject_id: str,
        resource_id: str | None,
        day: datetime | None = None,
    ) -> QuotaSnapshot:
        day = day or self._time_provider()
        if await self._resolver.has_unlimited(session, subject_id, resource_id, now=day):
            return _snapshot(None, None)
        used = await self.current_usage(session, subject_id=subject_id, resource_id=resource_id, day=day)
        return _snapshot(self._resolver.daily_limit(subject_id), used)

    async def check(
        self,
        session: AsyncSession,
        *,
        subject_id: str,
        resource_id: str | None,
    ) -> QuotaResult:
        """Decide whether one more action fits in today's window.

        Nothing is incremented here: the caller's insert of the action record
        is what consumes quota. Under ``quota_strict`` the subject row is
        locked first so concurrent checks for one subject run one at a time.
        """
        now = self._time_provider()
        if get_settings().quota_strict:
            await session.execute(select(User.id).where(User.id == subject_id).with_for_update())
        snapshot = await self.snapshot(session, subject_id=subject_id, resource_id=resource_id, day=now)
        if snapshot.unlimited:
            return QuotaResult(allowed=True, snapshot=snapshot)
        if (snapshot.used or 0) >= (snapshot.limit or 0):
            logger.info(
                "quota_exceeded subject=%s resource=%s used=%s limit=%s",
                subject_id,
                resource_id,
                snapshot.used,
                snapshot.limit,
            )
            return QuotaResult(allowed=False, snapshot=snapshot)
        return QuotaResult(allowed=True, snapshot=snapshot)


_quota_ledger: QuotaLedger | None = None


def get_quota_ledger() -> QuotaLedger:
    # Cache the ledger for reuse across requests.
    global _quota_ledger
    if _quota_ledger is None:
        _quota_ledger = QuotaLedger()
    return _quota_ledger


def set_quota_ledger(ledger: QuotaLedger | None) -> None:
    global _quota_ledger
    _quota_ledger = ledger


def _format(value: int | None) -> str:
    # Represent unlimited values with the agreed header token.
    return "unlimited" if value is None else str(value)


def quota_headers(snapshot: QuotaSnapshot) -> dict[str, str]:
    return {
        "X-Quota-Day-Limit": _format(snapshot.limit),
        "X-Quota-Day-Used": _format(snapshot.used),
        "X-Quota-Day-Remaining": _format(snapshot.remaining),
    }


def usage_payload(snapshot: QuotaSnapshot) -> dict[str, object]:
    # Give clients enough to render quota UI without a second round trip.
    return {
        "usage": {
            "unlimited": snapshot.unlimited,
            "limit": snapshot.limit,
            "remaining": snapshot.remaining,
        },
        "meta": {
            "has_unlimited": snapshot.unlimited,
            "daily_limit": snapshot.limit,
            "used_today": snapshot.used,
            "remaining_today": snapshot.remaining,
        },
    }


def build_quota_exception(result: QuotaResult) -> HTTPException:
    # Construct stable 402 payloads with scope and usage details.
    snapshot = result.snapshot
    if result.scope == SCOPE_TRIAL:
        code = "MESSAGES_ACCESS_EXPIRED"
        message = "Messaging trial has ended"
    else:
        code = "QUOTA_EXCEEDED"
        message = "Daily message quota exceeded"
    limit = snapshot.limit or 0
    used = snapshot.used or 0
    detail = {
        "code": code,
        "message": message,
        "scope": result.scope,
        "limit": limit,
        "used": min(used, limit) if result.scope == SCOPE_DAILY else used,
        "remaining": 0,
    }
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail=detail,
        headers=quota_headers(snapshot),
    )


def trial_expired_result(used: int = 0) -> QuotaResult:
    return QuotaResult(
        allowed=False,
        snapshot=QuotaSnapshot(limit=0, used=used, remaining=0),
        scope=SCOPE_TRIAL,
    )
