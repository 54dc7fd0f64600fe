"""Pytest configuration and shared fixtures."""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import fnmatch
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from orben.ingestion.registry import SourceSnapshot
from orben.models import Base
from orben.services.cache_service import CacheService
from orben.services.deal_store import DealStore


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (string values only).

    Set ``down = True`` to make every call raise a redis ConnectionError.
    """

    def __init__(self, clock=time.monotonic):
        self.store: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.down = False
        self.clock = clock
        self.closed = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.store.pop(key, None)
            self.expiry.pop(key, None)
            return False
        return key in self.store

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key) if self._alive(key) else None

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = str(value)
        self.ttls[key] = ex
        if ex is not None:
            self.expiry[key] = self.clock() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self._alive(key):
                deleted += 1
            self.store.pop(key, None)
            self.expiry.pop(key, None)
        return deleted

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.store.get(key, "0")) + 1 if self._alive(key) else 1
        self.store[key] = str(value)
        return value

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    def keys_matching(self, pattern: str):
        return sorted(k for k in self.store if fnmatch.fnmatch(k, pattern) and self._alive(k))


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database shared by every session in one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> DealStore:
    return DealStore(session_factory)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> CacheService:
    return CacheService("redis://test", client=fake_redis)


async def make_source(store: DealStore, **overrides) -> SourceSnapshot:
    """Create a source row and return its snapshot."""
    fields = {
        "name": "Deal Feed",
        "slug": "deal-feed",
        "type": "rss",
        "endpoint": "https://feeds.example.com/deals.rss",
        "enabled": True,
        "poll_interval_minutes": 30,
        "config": {"merchant": "BestBuy"},
    }
    fields.update(overrides)
    source = await store.create_source(**fields)
    return SourceSnapshot.from_model(source)


@pytest_asyncio.fixture
async def rss_source(store) -> SourceSnapshot:
    return await make_source(store)


class FakeClock:
    """Settable clock for components that take ``clock=``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
