from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from satgate.core.config import get_settings
from satgate.persistence.db import SessionLocal
from satgate.services.entitlements import FEATURE_MESSAGES_UNLIMITED
from satgate.services.quota import (
    QuotaLedger,
    QuotaResult,
    QuotaSnapshot,
    build_quota_exception,
    quota_headers,
    trial_expired_result,
)
from satgate.tests.utils.auth import create_test_user
from satgate.tests.utils.seed import create_coach, grant_entitlement, seed_messages


DAY_ONE = datetime(2026, 2, 7, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _small_daily_limit(monkeypatch) -> None:
    monkeypatch.setenv("FREE_DAILY_MESSAGES_LIMIT", "3")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_remaining_decreases_as_messages_are_stored() -> None:
    user_id = await create_test_user()
    coach = await create_coach()
    ledger = QuotaLedger(time_provider=lambda: DAY_ONE)

    seen: list[int | None] = []
    for _ in range(4):
        async with SessionLocal() as session:
            seen.append(await ledger.remaining(session, subject_id=user_id, resource_id=coach.id))
        await seed_messages(user_id, coach.id, 1, created_at=DAY_ONE)

    assert seen == [3, 2, 1, 0]


@pytest.mark.asyncio
async def test_check_refuses_once_limit_is_reached() -> None:
    user_id = await create_test_user()
    coach = await create_coach()
    ledger = QuotaLedger(time_provider=lambda: DAY_ONE)
    await seed_messages(user_id, coach.id, 2, created_at=DAY_ONE)

    async with SessionLocal() as session:
        allowed = await ledger.check(session, subject_id=user_id, resource_id=coach.id)
    assert allowed.allowed
    assert allowed.snapshot == QuotaSnapshot(limit=3, used=2, remaining=1)

    await seed_messages(user_id, coach.id, 1, created_at=DAY_ONE)
    async with SessionLocal() as session:
        refused = await ledger.check(session, subject_id=user_id, resource_id=coach.id)
    assert not refused.allowed
    assert refused.snapshot.remaining == 0


@pytest.mark.asyncio
async def test_usage_is_counted_per_resource() -> None:
    user_id = await create_test_user()
    first = await create_coach()
    second = await create_coach()
    ledger = QuotaLedger(time_provider=lambda: DAY_ONE)
    await seed_messages(user_id, first.id, 3, created_at=DAY_ONE)

    async with SessionLocal() as session:
        assert not (await ledger.check(session, subject_id=user_id, resource_id=first.id)).allowed
        assert (await ledger.check(session, subject_id=user_id, resource_id=second.id)).allowed


@pytest.mark.asyncio
async def test_window_rolls_over_at_utc_midnight() -> None:
    user_id = await create_test_user()
    coach = await create_coach()
    late = datetime(2026, 2, 7, 23, 59, 59, tzinfo=timezone.utc)
    await seed_messages(user_id, coach.id, 3, created_at=late)

    async with SessionLocal() as session:
        same_day = QuotaLedger(time_provider=lambda: late)
        assert not (await same_day.check(session, subject_id=user_id, resource_id=coach.id)).allowed

        next_day = QuotaLedger(time_provider=lambda: late + timedelta(seconds=1))
        result = await next_day.check(session, subject_id=user_id, resource_id=coach.id)
    assert result.allowed
    assert result.snapshot.used == 0


@pytest.mark.asyncio
async def test_unlimited_subject_bypasses_counting() -> None:
    user_id = await create_test_user()
    coach = await create_coach()
    await grant_entitlement(user_id, FEATURE_MESSAGES_UNLIMITED, starts_at=DAY_ONE - timedelta(days=1))
    await seed_messages(user_id, coach.id, 10, created_at=DAY_ONE)
    ledger = QuotaLedger(time_provider=lambda: DAY_ONE)

    async with SessionLocal() as session:
        result = await ledger.check(session, subject_id=user_id, resource_id=coach.id)

    assert result.allowed
    assert result.snapshot.unlimited
    assert result.snapshot.remaining is None


@pytest.mark.asyncio
async def test_lapsed_entitlement_falls_back_to_daily_limit() -> None:
    user_id = await create_test_user()
    coach = await create_coach()
    await grant_entitlement(
        user_id,
        FEATURE_MESSAGES_UNLIMITED,
        starts_at=DAY_ONE - timedelta(days=30),
        expires_at=DAY_ONE - timedelta(hours=1),
    )
    ledger = QuotaLedger(time_provider=lambda: DAY_ONE)

    async with SessionLocal() as session:
        snapshot = await ledger.snapshot(session, subject_id=user_id, resource_id=coach.id)

    assert snapshot == QuotaSnapshot(limit=3, used=0, remaining=3)


def test_quota_exception_payload_and_headers() -> None:
    exc = build_quota_exception(
        QuotaResult(allowed=False, snapshot=QuotaSnapshot(limit=3, used=3, remaining=0))
    )
    assert isinstance(exc, HTTPException)
    assert exc.status_code == 402
    assert exc.detail == {
        "code": "QUOTA_EXCEEDED",
        "message": "Daily message quota exceeded",
        "scope": "daily",
        "limit": 3,
        "used": 3,
        "remaining": 0,
    }
    assert exc.headers == {
        "X-Quota-Day-Limit": "3",
        "X-Quota-Day-Used": "3",
        "X-Quota-Day-Remaining": "0",
    }


def test_trial_refusal_uses_access_expired_code() -> None:
    exc = build_quota_exception(trial_expired_result())
    assert exc.status_code == 402
    assert exc.detail["code"] == "MESSAGES_ACCESS_EXPIRED"
    assert exc.detail["scope"] == "trial"


def test_unlimited_headers_use_unlimited_token() -> None:
    headers = quota_headers(QuotaSnapshot(limit=None, used=None, remaining=None))
    assert set(headers.values()) == {"unlimited"}
