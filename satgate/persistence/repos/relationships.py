from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.domain.models import Coach, CoachAthlete


STATUS_LEAD = "LEAD"
STATUS_ACTIVE = "ACTIVE"
STATUS_TO_FOLLOW = "TO_FOLLOW"
STATUS_ENDED = "ENDED"

ACTIVE_STATUSES = (STATUS_LEAD, STATUS_ACTIVE, STATUS_TO_FOLLOW)


async def get_coach_by_slug(session: AsyncSession, slug: str) -> Coach | None:
    result = await session.execute(select(Coach).where(Coach.slug == slug.lower()))
    return result.scalar_one_or_none()


async def lock_coach(session: AsyncSession, coach_id: str) -> Coach | None:
    # Row lock serializes admissions per coach; SQLite ignores FOR UPDATE and serializes writers itself.
    result = await session.execute(select(Coach).where(Coach.id == coach_id).with_for_update())
    return result.scalar_one_or_none()


async def get_relationship(
    session: AsyncSession,
    *,
    coach_id: str,
    athlete_id: str,
) -> CoachAthlete | None:
    result = await session.execute(
        select(CoachAthlete).where(
            CoachAthlete.coach_id == coach_id,
            CoachAthlete.athlete_id == athlete_id,
        )
    )
    return result.scalar_one_or_none()


async def count_active(session: AsyncSession, *, coach_id: str) -> int:
    result = await session.execute(
        select(func.count(CoachAthlete.id)).where(
            CoachAthlete.coach_id == coach_id,
            CoachAthlete.status.in_(ACTIVE_STATUSES),
        )
    )
    return int(result.scalar_one() or 0)


async def touch_or_create(
    session: AsyncSession,
    *,
    coach_id: str,
    athlete_id: str,
    now: datetime,
    existing: CoachAthlete | None = None,
) -> CoachAthlete:
    # Existing relationships keep their pipeline status; only activity is refreshed.
    relationship = existing or await get_relationship(session, coach_id=coach_id, athlete_id=athlete_id)
    if relationship is None:
        relationship = CoachAthlete(
            coach_id=coach_id,
            athlete_id=athlete_id,
            status=STATUS_LEAD,
            last_message_at=now,
        )
        session.add(relationship)
    else:
        relationship.last_message_at = now
    await session.flush()
    return relationship
