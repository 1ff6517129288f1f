from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable

from redis.asyncio import Redis
from redis.asyncio.lock import Lock

from satgate.core.config import get_settings


logger = logging.getLogger(__name__)

ISSUE_LOCK_PREFIX = "satgate:lock:issue"

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_override: Redis | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Reuse one connection pool per event loop for limiter and lock traffic.
    global _redis_pool, _redis_loop
    if _redis_override is not None:
        return _redis_override
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


def use_redis_client(client: Redis | None) -> None:
    # Route all Redis access through an injected client (tests, embedded runs).
    global _redis_override
    _redis_override = client


def reset_redis_state() -> None:
    global _redis_pool, _redis_loop, _redis_override
    _redis_pool = None
    _redis_loop = None
    _redis_override = None


@dataclass(frozen=True)
class BackoffPolicy:
    # Retry budget for callers that hit the issuance rate limit.
    max_attempts: int = 5
    base_s: float = 0.25
    max_s: float = 4.0


def backoff_delay(
    attempt: int,
    *,
    policy: BackoffPolicy,
    reset_in_s: float | None = None,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """Return how long to wait before retry number ``attempt`` (1-based).

    The exponential term is jittered so concurrent callers spread out. A
    server-provided reset delta is honored as a floor, and ``policy.max_s``
    caps the result either way.
    """
    exponential = policy.base_s * (2 ** max(attempt - 1, 0)) * jitter(0.5, 1.5)
    floor = max(reset_in_s or 0.0, 0.0)
    return min(policy.max_s, max(floor, exponential))


def issuance_lock(
    redis: Redis,
    subject_id: str,
    *,
    timeout_s: float = 10.0,
    blocking_timeout_s: float = 15.0,
) -> Lock:
    # One issuing worker per subject at a time keeps the herd off the limiter.
    return redis.lock(
        f"{ISSUE_LOCK_PREFIX}:{subject_id}",
        timeout=timeout_s,
        blocking_timeout=blocking_timeout_s,
    )
