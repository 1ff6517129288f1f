from __future__ import annotations

import os
import tempfile
from uuid import uuid4

# The engine is built at import time, so the environment must be ready first.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'satgate-test-{uuid4().hex}.db')}",
)
os.environ.setdefault("SAT_JWT_SECRET", "test-sat-secret-0123456789abcdef0123456789abcdef")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef0123456789")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from satgate.apps.api import rate_limit
from satgate.core.config import get_settings
from satgate.domain.models import Base
from satgate.persistence.db import engine
from satgate.services.quota import set_quota_ledger
from satgate.services.relationships import set_relationship_guard
from satgate.services.resilience import reset_redis_state, use_redis_client
from satgate.services.sat.gate import set_gate
from satgate.services.sat.issuer import set_issuer


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Build a clean schema per test and dispose the engine so connections never cross loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def fake_redis() -> FakeAsyncRedis:
    # Route limiter and lock traffic to an isolated in-memory Redis.
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    use_redis_client(client)
    yield client
    reset_redis_state()
    await client.aclose()


@pytest.fixture(autouse=True)
def reset_service_state() -> None:
    # Drop cached settings and service singletons so env overrides never leak.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    set_issuer(None)
    set_gate(None)
    set_quota_ledger(None)
    set_relationship_guard(None)
