from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.domain.models import SatToken


async def insert_pending(
    session: AsyncSession,
    *,
    token_id: str,
    subject_id: str,
    feature: str,
    method: str,
    path: str,
    issued_at: datetime,
    expires_at: datetime,
    session_id: str | None = None,
) -> SatToken:
    # Persist the unconsumed record before the token leaves the server.
    record = SatToken(
        token_id=token_id,
        subject_id=subject_id,
        feature=feature,
        method=method,
        path=path,
        session_id=session_id,
        issued_at=issued_at,
        expires_at=expires_at,
        consumed_at=None,
    )
    session.add(record)
    await session.flush()
    return record


async def claim(
    session: AsyncSession,
    *,
    token_id: str,
    subject_id: str,
    method: str | None,
    path: str | None,
    now: datetime,
) -> bool:
    # Single conditional write; only one concurrent caller can match consumed_at IS NULL.
    conditions = [
        SatToken.token_id == token_id,
        SatToken.subject_id == subject_id,
        SatToken.consumed_at.is_(None),
        SatToken.expires_at > now,
    ]
    if method is not None:
        conditions.append(SatToken.method == method)
    if path is not None:
        conditions.append(SatToken.path == path)
    result = await session.execute(
        update(SatToken)
        .where(*conditions)
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def prune_expired(session: AsyncSession, *, older_than: datetime) -> int:
    # Expired rows can never authorize again; deleting them is housekeeping only.
    result = await session.execute(
        delete(SatToken)
        .where(SatToken.expires_at < older_than)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
