from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from satgate.domain.models import SatToken
from satgate.persistence.db import SessionLocal
from satgate.persistence.repos import replay


T0 = datetime(2026, 7, 1, 9, 0, tzinfo=timezone.utc)


async def _insert(token_id: str, *, expires_at: datetime) -> None:
    async with SessionLocal() as session:
        await replay.insert_pending(
            session,
            token_id=token_id,
            subject_id="u-ledger",
            feature="chat.send",
            method="POST",
            path="/v1/messages",
            issued_at=expires_at - timedelta(seconds=120),
            expires_at=expires_at,
        )
        await session.commit()


async def _claim(token_id: str, *, now: datetime, **overrides: str) -> bool:
    params = {"subject_id": "u-ledger", "method": "POST", "path": "/v1/messages"}
    params.update(overrides)
    async with SessionLocal() as session:
        claimed = await replay.claim(session, token_id=token_id, now=now, **params)
        await session.commit()
    return claimed


@pytest.mark.asyncio
async def test_claim_succeeds_once() -> None:
    await _insert("tok-once", expires_at=T0 + timedelta(seconds=120))

    assert await _claim("tok-once", now=T0)
    assert not await _claim("tok-once", now=T0 + timedelta(seconds=1))


@pytest.mark.asyncio
async def test_claim_refuses_at_and_after_expiry() -> None:
    expires_at = T0 + timedelta(seconds=120)
    await _insert("tok-expiry", expires_at=expires_at)

    assert not await _claim("tok-expiry", now=expires_at)
    async with SessionLocal() as session:
        record = await session.get(SatToken, "tok-expiry")
    assert record is not None
    assert record.consumed_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "override",
    [{"subject_id": "u-other"}, {"method": "GET"}, {"path": "/v1/contacts"}],
)
async def test_claim_is_conditioned_on_binding(override: dict[str, str]) -> None:
    await _insert("tok-binding", expires_at=T0 + timedelta(seconds=120))

    assert not await _claim("tok-binding", now=T0, **override)
    assert await _claim("tok-binding", now=T0)


@pytest.mark.asyncio
async def test_prune_removes_only_rows_expired_before_cutoff() -> None:
    await _insert("tok-old", expires_at=T0 - timedelta(days=2))
    await _insert("tok-recent", expires_at=T0 - timedelta(hours=1))
    await _insert("tok-live", expires_at=T0 + timedelta(minutes=2))

    async with SessionLocal() as session:
        deleted = await replay.prune_expired(session, older_than=T0 - timedelta(hours=24))
        await session.commit()

    assert deleted == 1
    async with SessionLocal() as session:
        remaining = set((await session.execute(select(SatToken.token_id))).scalars().all())
    assert remaining == {"tok-recent", "tok-live"}
