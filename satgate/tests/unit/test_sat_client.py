from __future__ import annotations

import json

import httpx
import pytest

from satgate.sdk.client import (
    SatClient,
    SatIssueError,
    SatRateLimitedError,
    SatUnauthenticatedError,
)
from satgate.services.resilience import issuance_lock


NOW_S = 1_800_000_010.0


def _issued() -> httpx.Response:
    return httpx.Response(
        201,
        json={
            "data": {"token": "tok", "token_id": "tid-1", "expires_at": "2027-01-15T08:02:00Z"},
            "meta": {"request_id": "r-1", "api_version": "v1"},
        },
    )


def _throttled(reset_at: int) -> httpx.Response:
    return httpx.Response(
        429,
        headers={"RateLimit-Limit": "20", "RateLimit-Remaining": "0", "RateLimit-Reset": str(reset_at)},
        json={"error": {"code": "RATE_LIMITED", "message": "Rate limit exceeded"}, "meta": {}},
    )


class _Recorder:
    def __init__(self, responses: list[httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def _client(recorder: _Recorder, http: httpx.AsyncClient, **kwargs) -> SatClient:
    return SatClient(
        http,
        sleep=recorder.sleep,
        clock=lambda: NOW_S,
        jitter=lambda low, high: 1.0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_returns_token_on_first_success() -> None:
    recorder = _Recorder([_issued()])
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler), base_url="http://test") as http:
        issued = await _client(recorder, http).request_token("chat.send", "POST", "/v1/messages")

    assert issued.token == "tok"
    assert issued.token_id == "tid-1"
    assert issued.expires_at.tzinfo is not None
    assert json.loads(recorder.requests[0].content) == {
        "feature": "chat.send",
        "method": "POST",
        "path": "/v1/messages",
    }
    assert recorder.sleeps == []


@pytest.mark.asyncio
async def test_waits_until_reset_then_retries() -> None:
    recorder = _Recorder([_throttled(int(NOW_S) + 2), _issued()])
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler), base_url="http://test") as http:
        issued = await _client(recorder, http).request_token("chat.send", "POST", "/v1/messages")

    assert issued.token_id == "tid-1"
    assert recorder.sleeps == [2.0]
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_with_last_telemetry() -> None:
    reset_at = int(NOW_S)
    recorder = _Recorder([_throttled(reset_at) for _ in range(3)])
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler), base_url="http://test") as http:
        client = _client(recorder, http, max_attempts=3)
        with pytest.raises(SatRateLimitedError) as exc_info:
            await client.request_token("chat.send", "POST", "/v1/messages")

    assert exc_info.value.attempts == 3
    assert exc_info.value.info.reset_at == reset_at
    assert exc_info.value.info.remaining == 0
    assert recorder.sleeps == [0.25, 0.5]


@pytest.mark.asyncio
async def test_unauthenticated_is_not_retried() -> None:
    recorder = _Recorder([httpx.Response(401, json={"error": {"code": "AUTH_UNAUTHORIZED", "message": "no"}})])
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler), base_url="http://test") as http:
        with pytest.raises(SatUnauthenticatedError):
            await _client(recorder, http).request_token("chat.send", "POST", "/v1/messages")

    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_other_refusals_surface_their_code() -> None:
    recorder = _Recorder(
        [httpx.Response(400, json={"error": {"code": "SAT_UNKNOWN_FEATURE", "message": "Unknown feature"}})]
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder.handler), base_url="http://test") as http:
        with pytest.raises(SatIssueError) as exc_info:
            await _client(recorder, http).request_token("nope", "POST", "/v1/messages")

    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "SAT_UNKNOWN_FEATURE"


@pytest.mark.asyncio
async def test_lock_is_held_across_the_retry_loop(fake_redis) -> None:
    observed: list[bool] = []

    async def _check_lock(request: httpx.Request) -> httpx.Response:
        observed.append(bool(await fake_redis.exists("satgate:lock:issue:u-1")))
        return _issued() if len(observed) > 1 else _throttled(int(NOW_S))

    recorder = _Recorder([])
    async with httpx.AsyncClient(transport=httpx.MockTransport(_check_lock), base_url="http://test") as http:
        client = _client(recorder, http, lock=issuance_lock(fake_redis, "u-1"))
        await client.request_token("chat.send", "POST", "/v1/messages")

    assert observed == [True, True]
    assert not await fake_redis.exists("satgate:lock:issue:u-1")
