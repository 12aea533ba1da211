"""
Pytest configuration and shared test fixtures.

Tests run against a file-backed SQLite database (one per test, created from
the model metadata) and an in-memory stand-in for the Redis client, so the
whole workflow can be exercised without external services.
"""

import os

os.environ.setdefault("VRS_ENVIRONMENT", "test")
os.environ.setdefault("VRS_CACHE_ENABLED", "false")
os.environ.setdefault("VRS_LOG_LEVEL", "WARNING")
os.environ.setdefault("VRS_DATABASE_URL", "sqlite+aiosqlite:///./vehicle_registry_test.db")

import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from vehicle_registry.cache.redis_client import CacheKeyManager
from vehicle_registry.database.connection import (
    create_engine,
    create_schema,
    create_session_factory,
)
from vehicle_registry.schemas.orders import OrderFields
from vehicle_registry.services.cache.order_cache import OrderCache
from vehicle_registry.services.orders.service import OrderLifecycleService


class FakeRedisClient:
    """
    In-memory replacement for ``RedisClient``.

    Values are stored as JSON strings, like the real client does, so cached
    snapshots go through the same serialization. ``fail_reads``,
    ``fail_writes`` and ``fail_deletes`` make the matching calls raise.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.fail_deletes = False
        self.delete_calls: list[tuple[str, ...]] = []

    async def get_json(self, key: str) -> Any:
        if self.fail_reads:
            raise ConnectionError("Redis unavailable")
        raw = self.store.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        if self.fail_writes:
            raise ConnectionError("Redis unavailable")
        self.store[key] = json.dumps(value)
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        if self.fail_deletes:
            raise ConnectionError("Redis unavailable")
        self.delete_calls.append(keys)
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class TickingClock:
    """Clock that advances one minute on every call."""

    def __init__(
        self,
        start: datetime = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
        step: timedelta = timedelta(minutes=1),
    ):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        self.current = self.current + self.step
        return self.current


def build_order_fields(**overrides: Any) -> OrderFields:
    """Valid applicant and vehicle fields, with per-test overrides."""
    values: dict[str, Any] = {
        "full_name": "Lina Haddad",
        "national_number": "0102030405",
        "mother_name": "Mariam",
        "car_name": "Toyota",
        "model": "Corolla",
        "year_of_manufacture": 2019,
        "color": "White",
        "engine_number": "EN100",
    }
    values.update(overrides)
    return OrderFields(**values)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with the order schema."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest.fixture
def fake_redis() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def key_manager() -> CacheKeyManager:
    return CacheKeyManager(namespace="test")


@pytest.fixture
def order_cache(fake_redis: FakeRedisClient, key_manager: CacheKeyManager) -> OrderCache:
    return OrderCache(
        redis_client=fake_redis,
        key_manager=key_manager,
        order_ttl=180,
        user_orders_ttl=120,
    )


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def service(
    db_session: AsyncSession, order_cache: OrderCache, clock: TickingClock
) -> OrderLifecycleService:
    return OrderLifecycleService(
        db_session, cache=order_cache, clock=clock, max_conflict_retries=1
    )


@pytest.fixture
def make_fields() -> Callable[..., OrderFields]:
    """Factory for valid order fields; keyword arguments override single fields."""
    return build_order_fields


@pytest.fixture
def fields() -> OrderFields:
    return build_order_fields()
