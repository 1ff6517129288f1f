from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.core.config import get_settings
from satgate.domain.models import Coach, UserEntitlement


FEATURE_MESSAGES_UNLIMITED = "messages.unlimited"
FEATURE_MESSAGES_FREE_TRIAL = "messages.free_trial"
FEATURE_COACH_UNLIMITED_ATHLETES = "coach.unlimited_athletes"


async def active_feature_keys(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime,
) -> set[str]:
    # An entitlement counts once started and until its optional expiry.
    result = await session.execute(
        select(UserEntitlement.feature_key).where(
            UserEntitlement.user_id == user_id,
            UserEntitlement.starts_at <= now,
            or_(UserEntitlement.expires_at.is_(None), UserEntitlement.expires_at > now),
        )
    )
    return {str(key) for key in result.scalars().all()}


async def has_feature(session: AsyncSession, user_id: str, feature_key: str, *, now: datetime) -> bool:
    return feature_key in await active_feature_keys(session, user_id, now=now)


class EntitlementResolver:
    """Answer plan questions for the quota ledger and the cardinality guard."""

    async def has_unlimited(
        self,
        session: AsyncSession,
        subject_id: str,
        resource_id: str | None,
        *,
        now: datetime,
    ) -> bool:
        # Unlimited messaging is per subject; the resource does not narrow it.
        return await has_feature(session, subject_id, FEATURE_MESSAGES_UNLIMITED, now=now)

    async def has_messages_access(self, session: AsyncSession, subject_id: str, *, now: datetime) -> bool:
        keys = await active_feature_keys(session, subject_id, now=now)
        return FEATURE_MESSAGES_UNLIMITED in keys or FEATURE_MESSAGES_FREE_TRIAL in keys

    def daily_limit(self, subject_id: str) -> int:
        return max(0, int(get_settings().free_daily_messages_limit))

    async def coach_has_unlimited_athletes(self, session: AsyncSession, coach: Coach, *, now: datetime) -> bool:
        # Coaches without a linked user account stay on the free ceiling.
        if not coach.user_id:
            return False
        return await has_feature(session, coach.user_id, FEATURE_COACH_UNLIMITED_ATHLETES, now=now)

    def athlete_ceiling(self) -> int:
        return max(0, int(get_settings().coach_free_active_athletes_limit))


_resolver: EntitlementResolver | None = None


def get_entitlement_resolver() -> EntitlementResolver:
    global _resolver
    if _resolver is None:
        _resolver = EntitlementResolver()
    return _resolver
