from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from satgate.domain.models import SatToken
from satgate.domain.sat import DecodeFailure, SatAuthorized, SatClaims, SatDenied, SatErrorCode
from satgate.persistence.db import SessionLocal
from satgate.services.sat import codec
from satgate.services.sat.gate import SatGate
from satgate.services.sat.issuer import SatIssuer


T0 = datetime(2026, 5, 2, 10, 0, tzinfo=timezone.utc)
TTL_S = 120


def _gate_at(moment: datetime) -> SatGate:
    return SatGate(time_provider=lambda: moment)


async def _issue(
    *,
    subject_id: str = "u-gate",
    feature: str = "chat.send",
    method: str = "POST",
    path: str = "/v1/messages",
    session_id: str | None = None,
) -> str:
    issuer = SatIssuer(time_provider=lambda: T0, ttl_s=TTL_S)
    async with SessionLocal() as session:
        issued = await issuer.issue(
            session=session,
            subject_id=subject_id,
            feature=feature,
            method=method,
            path=path,
            session_id=session_id,
        )
    return issued.token


async def _verify(gate: SatGate, token: str | None, **overrides: str | None):
    request = {
        "subject_id": "u-gate",
        "feature": "chat.send",
        "method": "POST",
        "path": "/v1/messages",
    }
    request.update(overrides)
    async with SessionLocal() as session:
        return await gate.verify_and_consume(session=session, token=token, **request)


@pytest.mark.asyncio
async def test_first_use_succeeds_and_marks_record_consumed() -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=5))

    decision = await _verify(gate, token)

    assert isinstance(decision, SatAuthorized)
    assert decision.allowed
    async with SessionLocal() as session:
        record = (await session.execute(select(SatToken))).scalar_one()
    assert record.consumed_at is not None


@pytest.mark.asyncio
async def test_second_use_is_refused_as_replay() -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=5))

    assert (await _verify(gate, token)).allowed
    second = await _verify(gate, token)

    assert isinstance(second, SatDenied)
    assert second.code == SatErrorCode.REPLAYED_OR_EXPIRED


@pytest.mark.asyncio
async def test_missing_token_is_required() -> None:
    decision = await _verify(_gate_at(T0), None)
    assert isinstance(decision, SatDenied)
    assert decision.code == SatErrorCode.TOKEN_REQUIRED


@pytest.mark.asyncio
async def test_garbage_token_is_invalid() -> None:
    decision = await _verify(_gate_at(T0), "not.a.jwt")
    assert isinstance(decision, SatDenied)
    assert decision.code == SatErrorCode.TOKEN_INVALID
    assert decision.reason == DecodeFailure.MALFORMED.value


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("override", "expected_code", "expected_reason"),
    [
        ({"subject_id": "u-other"}, SatErrorCode.SUBJECT_MISMATCH, None),
        ({"feature": "contacts.view"}, SatErrorCode.FEATURE_FORBIDDEN, None),
        ({"method": "GET"}, SatErrorCode.BINDING_MISMATCH, "method"),
        ({"path": "/v1/messages/other"}, SatErrorCode.BINDING_MISMATCH, "path"),
    ],
)
async def test_each_binding_dimension_must_match_exactly(
    override: dict[str, str],
    expected_code: SatErrorCode,
    expected_reason: str | None,
) -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=5))

    refused = await _verify(gate, token, **override)
    assert isinstance(refused, SatDenied)
    assert refused.code == expected_code
    assert refused.reason == expected_reason

    # A refused mismatch does not spend the token.
    assert (await _verify(gate, token)).allowed


@pytest.mark.asyncio
async def test_method_comparison_ignores_request_case() -> None:
    token = await _issue()
    decision = await _verify(_gate_at(T0 + timedelta(seconds=5)), token, method="post")
    assert decision.allowed


@pytest.mark.asyncio
async def test_expired_token_is_refused_even_if_never_used() -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=TTL_S + 1))

    decision = await _verify(gate, token)

    assert isinstance(decision, SatDenied)
    assert decision.code == SatErrorCode.TOKEN_INVALID
    assert decision.reason == DecodeFailure.EXPIRED.value


@pytest.mark.asyncio
async def test_unknown_identifier_is_refused_at_claim() -> None:
    # Correctly signed but never pre-inserted: the ledger has no row to claim.
    claims = SatClaims(
        subject="u-gate",
        feature="chat.send",
        method="POST",
        path="/v1/messages",
        token_id="never-issued",
        issued_at=T0,
        expires_at=T0 + timedelta(seconds=TTL_S),
    )
    token = codec.encode(claims)

    decision = await _verify(_gate_at(T0 + timedelta(seconds=1)), token)

    assert isinstance(decision, SatDenied)
    assert decision.code == SatErrorCode.REPLAYED_OR_EXPIRED
    assert decision.token_id == "never-issued"


@pytest.mark.asyncio
async def test_token_without_identifier_is_refused() -> None:
    claims = SatClaims(
        subject="u-gate",
        feature="chat.send",
        method="POST",
        path="/v1/messages",
        token_id=None,
        issued_at=T0,
        expires_at=T0 + timedelta(seconds=TTL_S),
    )
    decision = await _verify(_gate_at(T0 + timedelta(seconds=1)), codec.encode(claims))

    assert isinstance(decision, SatDenied)
    assert decision.code == SatErrorCode.MISSING_TOKEN_ID


@pytest.mark.asyncio
async def test_session_bound_token_rejects_other_session() -> None:
    token = await _issue(session_id="s-issuing")
    gate = _gate_at(T0 + timedelta(seconds=5))

    refused = await _verify(gate, token, session_id="s-other")
    assert isinstance(refused, SatDenied)
    assert refused.code == SatErrorCode.SUBJECT_MISMATCH
    assert refused.reason == "session"

    assert (await _verify(gate, token, session_id="s-issuing")).allowed


@pytest.mark.asyncio
async def test_uncommitted_claim_is_undone_by_rollback() -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=5))

    async with SessionLocal() as session:
        decision = await gate.verify_and_consume(
            session=session,
            token=token,
            subject_id="u-gate",
            feature="chat.send",
            method="POST",
            path="/v1/messages",
            commit=False,
        )
        assert decision.allowed
        await session.rollback()

    assert (await _verify(gate, token)).allowed


@pytest.mark.asyncio
async def test_concurrent_presentations_authorize_exactly_once() -> None:
    token = await _issue()
    gate = _gate_at(T0 + timedelta(seconds=5))

    decisions = await asyncio.gather(*[_verify(gate, token) for _ in range(5)])

    allowed = [decision for decision in decisions if decision.allowed]
    refused = [decision for decision in decisions if not decision.allowed]
    assert len(allowed) == 1
    assert len(refused) == 4
    assert all(decision.code == SatErrorCode.REPLAYED_OR_EXPIRED for decision in refused)
