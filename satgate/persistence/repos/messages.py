from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.domain.models import Message


async def add_message(
    session: AsyncSession,
    *,
    user_id: str,
    coach_id: str | None,
    content: str,
    created_at: datetime,
) -> Message:
    message = Message(user_id=user_id, coach_id=coach_id, content=content, created_at=created_at)
    session.add(message)
    await session.flush()
    return message


async def count_messages(
    session: AsyncSession,
    *,
    user_id: str,
    coach_id: str | None,
    since: datetime,
    until: datetime,
) -> int:
    # Usage is the count of stored messages; there is no separate counter to drift.
    stmt = select(func.count(Message.id)).where(
        Message.user_id == user_id,
        Message.created_at >= since,
        Message.created_at < until,
    )
    if coach_id is None:
        stmt = stmt.where(Message.coach_id.is_(None))
    else:
        stmt = stmt.where(Message.coach_id == coach_id)
    result = await session.execute(stmt)
    return int(result.scalar_one() or 0)


async def list_messages(
    session: AsyncSession,
    *,
    user_id: str,
    coach_id: str | None = None,
    limit: int = 100,
) -> list[Message]:
    stmt = select(Message).where(Message.user_id == user_id)
    if coach_id is not None:
        stmt = stmt.where(Message.coach_id == coach_id)
    # Take the newest rows, then hand them back oldest first for display.
    stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(reversed(result.scalars().all()))
