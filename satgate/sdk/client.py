"""Caller-side client for the action-token issuance endpoint.

Implements the retry contract callers are expected to follow: on 429 wait
until the advertised window reset (never less than a jittered exponential
step, never more than the ceiling), give up after a bounded number of
attempts, and never retry an authentication failure.
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
import logging
import random
import time
from typing import Any, AsyncContextManager, Awaitable, Callable

import httpx

from satgate.services.resilience import BackoffPolicy, backoff_delay


logger = logging.getLogger(__name__)


class SatClientError(Exception):
    """Base error for issuance client failures."""


class SatUnauthenticatedError(SatClientError):
    """The session was rejected; retrying cannot help."""


class SatIssueError(SatClientError):
    def __init__(self, status_code: int, code: str | None, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int | None
    remaining: int | None
    reset_at: int | None


class SatRateLimitedError(SatClientError):
    def __init__(self, info: RateLimitInfo, attempts: int) -> None:
        super().__init__(f"rate limited after {attempts} attempts")
        self.info = info
        self.attempts = attempts


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


def _int_header(headers: httpx.Headers, name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def rate_limit_info(headers: httpx.Headers) -> RateLimitInfo:
    return RateLimitInfo(
        limit=_int_header(headers, "RateLimit-Limit"),
        remaining=_int_header(headers, "RateLimit-Remaining"),
        reset_at=_int_header(headers, "RateLimit-Reset"),
    )


def _error_fields(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body: Any = response.json()
    except ValueError:
        return None, response.text or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), str(error.get("message") or "")
    return None, f"HTTP {response.status_code}"


class SatClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        max_attempts: int = 5,
        base_backoff_s: float = 0.25,
        max_backoff_s: float = 4.0,
        lock: AsyncContextManager[Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[float, float], float] = random.uniform,
        issue_path: str = "/v1/sat",
    ) -> None:
        self._http = http
        self._policy = BackoffPolicy(max_attempts=max(1, max_attempts), base_s=base_backoff_s, max_s=max_backoff_s)
        self._lock = lock
        self._sleep = sleep
        self._clock = clock
        self._jitter = jitter
        self._issue_path = issue_path

    async def request_token(self, feature: str, method: str, path: str) -> IssuedToken:
        async with AsyncExitStack() as stack:
            # Hold the shared lock for the whole retry loop so workers queue instead of stampeding.
            if self._lock is not None:
                await stack.enter_async_context(self._lock)
            return await self._request_with_retry(feature, method, path)

    async def _request_with_retry(self, feature: str, method: str, path: str) -> IssuedToken:
        payload = {"feature": feature, "method": method, "path": path}
        info = RateLimitInfo(limit=None, remaining=None, reset_at=None)
        for attempt in range(1, self._policy.max_attempts + 1):
            response = await self._http.post(self._issue_path, json=payload)
            if response.status_code == 201:
                data = response.json()["data"]
                return IssuedToken(
                    token=data["token"],
                    token_id=data["token_id"],
                    expires_at=datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00")),
                )
            if response.status_code == 401:
                raise SatUnauthenticatedError("session rejected by issuer")
            if response.status_code != 429:
                code, message = _error_fields(response)
                raise SatIssueError(response.status_code, code, message)

            info = rate_limit_info(response.headers)
            if attempt >= self._policy.max_attempts:
                break
            reset_in_s = None
            if info.reset_at is not None:
                reset_in_s = info.reset_at - self._clock()
            delay = backoff_delay(attempt, policy=self._policy, reset_in_s=reset_in_s, jitter=self._jitter)
            logger.info("sat_issue_backoff attempt=%s delay_s=%.3f reset=%s", attempt, delay, info.reset_at)
            await self._sleep(delay)
        raise SatRateLimitedError(info, self._policy.max_attempts)
