from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from satgate.core.config import get_settings
from satgate.services.audit import record_event
from satgate.services.resilience import get_redis


logger = logging.getLogger(__name__)

LIMIT_SAT = "sat"
LIMIT_MESSAGES = "messages"


@dataclass(frozen=True)
class WindowConfig:
    limit: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome plus the telemetry that every response of a limited route carries.
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_s: int
    degraded: bool = False


# INCR is atomic, so concurrent callers each see a distinct count.
_FIXED_WINDOW_LUA = r"""
local current = redis.call("INCR", KEYS[1])
if current == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
return current
"""


def window_bounds(now_s: float, window_s: int) -> tuple[int, int]:
    # Align windows to epoch multiples so every instance agrees on boundaries.
    window_s = max(1, int(window_s))
    start = int(now_s // window_s) * window_s
    return start, start + window_s


def _decision(*, count: int, config: WindowConfig, reset_at: int, now_s: float) -> RateLimitDecision:
    allowed = count <= config.limit
    retry_after_s = 0 if allowed else max(1, int(math.ceil(reset_at - now_s)))
    return RateLimitDecision(
        allowed=allowed,
        limit=config.limit,
        remaining=max(config.limit - count, 0),
        reset_at=reset_at,
        retry_after_s=retry_after_s,
    )


class RateLimiter:
    def __init__(
        self,
        *,
        redis: Redis | None = None,
        time_provider: Callable[[], float] | None = None,
        prefix: str | None = None,
    ) -> None:
        # Allow injecting Redis and time for deterministic tests.
        self._redis = redis
        self._time_provider = time_provider or time.time
        self._prefix = prefix

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await get_redis()

    def _key(self, name: str, key: str, window_start: int) -> str:
        prefix = self._prefix or get_settings().rl_redis_prefix
        return f"{prefix}:{name}:{key}:{window_start}"

    async def hit(self, *, name: str, key: str, config: WindowConfig) -> RateLimitDecision:
        # Count this request in the current window and report what is left.
        now_s = self._time_provider()
        window_start, reset_at = window_bounds(now_s, config.window_s)
        redis = await self._client()
        # Keep the key a little past the window so late readers still see it.
        ttl_ms = (config.window_s + 1) * 1000
        count = int(await redis.eval(_FIXED_WINDOW_LUA, 1, self._key(name, key, window_start), ttl_ms))
        return _decision(count=count, config=config, reset_at=reset_at, now_s=now_s)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share Redis connections and time provider.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    global _rate_limiter
    _rate_limiter = None


def window_for(name: str) -> WindowConfig:
    settings = get_settings()
    if name == LIMIT_SAT:
        return WindowConfig(limit=settings.rl_sat_limit, window_s=settings.rl_sat_window_s)
    return WindowConfig(limit=settings.rl_messages_limit, window_s=settings.rl_messages_window_s)


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    # RateLimit-Reset is the epoch second at which the current window ends.
    headers = {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(decision.remaining),
        "RateLimit-Reset": str(decision.reset_at),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after_s)
    return headers


def _throttle_exception(*, decision: RateLimitDecision, name: str) -> HTTPException:
    # Construct a stable 429 response carrying the same telemetry as successes.
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "limit_name": name,
            "limit": decision.limit,
            "remaining": decision.remaining,
            "reset": decision.reset_at,
            "retry_after_s": decision.retry_after_s,
        },
        headers=rate_limit_headers(decision),
    )


def _unavailable_exception() -> HTTPException:
    # Return a stable 503 when rate limit storage is unavailable and fail-closed.
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    name: str,
    key: str,
    subject_id: str,
    subject_role: str | None = None,
) -> RateLimitDecision | None:
    """Spend one unit of ``name`` budget for ``key`` or raise 429.

    Telemetry headers are written onto ``response`` for allowed requests and
    onto the raised exception for refusals.
    """
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None

    config = window_for(name)
    try:
        decision = await get_rate_limiter().hit(name=name, key=key, config=config)
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() != "open":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded name=%s path=%s", name, request.url.path)
        return None

    telemetry = rate_limit_headers(decision)
    for header, value in telemetry.items():
        response.headers[header] = value
    # Error handlers copy these so refusals raised later in the route keep the telemetry.
    request.state.rate_limit_headers = telemetry
    if decision.allowed:
        return decision

    logger.info("rate_limited name=%s subject=%s reset=%s", name, subject_id, decision.reset_at)
    await record_event(
        request=request,
        actor_type="user",
        actor_id=subject_id,
        actor_role=subject_role,
        event_type="security.rate_limited",
        outcome="failure",
        resource_type="rate_limit",
        resource_id=name,
        metadata={"key": key, "limit": decision.limit, "reset": decision.reset_at, "path": request.url.path},
        error_code="RATE_LIMITED",
        best_effort=True,
    )
    raise _throttle_exception(decision=decision, name=name)
