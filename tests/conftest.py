from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from meshvpn.cache import SafeCache, TTLMemoryCache
from meshvpn.core.config import Settings
from meshvpn.db import models  # noqa: F401
from meshvpn.db.base import Base
from meshvpn.db.session import make_sessionmaker, session_scope
from meshvpn.services.container import build_services
from meshvpn.services.tunnel.provisioner import MockProvisioner

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


class FailingCache:
    """Cache backend whose every call blows up."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")


@pytest.fixture
def failing_cache():
    return FailingCache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://", env="development", admin_wallets=("ADMIN_WALLET",))


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def cache(clock):
    return SafeCache(TTLMemoryCache(timer=lambda: clock().timestamp()))


@pytest.fixture
def provisioner(clock):
    return MockProvisioner(clock)


@pytest.fixture
def services(settings, sessions, cache, provisioner, clock):
    return build_services(settings, sessions, cache, provisioner, clock=clock)


@pytest.fixture
def fetch_node(sessions):
    async def _fetch(wallet):
        async with session_scope(sessions) as session:
            return await session.get(models.Node, wallet)

    return _fetch
