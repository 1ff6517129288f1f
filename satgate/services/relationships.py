from __future__ import annotations

from dataclasses import dataclass
import logging

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.clock import TimeProvider, utc_now
from satgate.domain.models import Coach, CoachAthlete
from satgate.persistence.repos import relationships as relationships_repo
from satgate.services.entitlements import EntitlementResolver, get_entitlement_resolver


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    limit: int | None
    active: int | None
    existing: CoachAthlete | None = None


class RelationshipGuard:
    def __init__(
        self,
        *,
        resolver: EntitlementResolver | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self._resolver = resolver or get_entitlement_resolver()
        self._time_provider = time_provider or utc_now

    async def admit(self, session: AsyncSession, *, coach: Coach, athlete_id: str) -> AdmissionResult:
        """Decide whether ``athlete_id`` may message ``coach``.

        Existing relationships always pass, whatever their status. A new one
        is checked against the coach's ceiling while the coach row is locked,
        so the count and the later insert happen in one critical section.
        """
        now = self._time_provider()
        existing = await relationships_repo.get_relationship(session, coach_id=coach.id, athlete_id=athlete_id)
        if existing is not None:
            return AdmissionResult(allowed=True, limit=None, active=None, existing=existing)
        if await self._resolver.coach_has_unlimited_athletes(session, coach, now=now):
            return AdmissionResult(allowed=True, limit=None, active=None)

        await relationships_repo.lock_coach(session, coach.id)
        # Re-read under the lock; a concurrent request may have created the pair.
        existing = await relationships_repo.get_relationship(session, coach_id=coach.id, athlete_id=athlete_id)
        if existing is not None:
            return AdmissionResult(allowed=True, limit=None, active=None, existing=existing)
        limit = self._resolver.athlete_ceiling()
        active = await relationships_repo.count_active(session, coach_id=coach.id)
        if active >= limit:
            logger.info("relationship_limit_reached coach=%s active=%s limit=%s", coach.id, active, limit)
            return AdmissionResult(allowed=False, limit=limit, active=active)
        return AdmissionResult(allowed=True, limit=limit, active=active)

    async def admit_and_touch(
        self,
        session: AsyncSession,
        *,
        coach: Coach,
        athlete_id: str,
    ) -> AdmissionResult:
        # Create or refresh the relationship only when admission passed.
        result = await self.admit(session, coach=coach, athlete_id=athlete_id)
        if not result.allowed:
            return result
        relationship = await relationships_repo.touch_or_create(
            session,
            coach_id=coach.id,
            athlete_id=athlete_id,
            now=self._time_provider(),
            existing=result.existing,
        )
        return AdmissionResult(
            allowed=True,
            limit=result.limit,
            active=result.active,
            existing=relationship,
        )


_guard: RelationshipGuard | None = None


def get_relationship_guard() -> RelationshipGuard:
    global _guard
    if _guard is None:
        _guard = RelationshipGuard()
    return _guard


def set_relationship_guard(guard: RelationshipGuard | None) -> None:
    global _guard
    _guard = guard


def build_relationship_exception(result: AdmissionResult) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": "RELATIONSHIP_LIMIT_EXCEEDED",
            "message": "Coach has reached the active athlete limit",
            "limit": result.limit,
        },
    )
