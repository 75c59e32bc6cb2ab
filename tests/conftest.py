from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
import pytest_asyncio

from shared.database import get_engine, get_session

from app import models  # noqa: F401  registers tables
from app.db import Base
from app.notifications import post_commit


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await post_commit.drain()


@pytest.fixture
def notifier():
    """Stand-in for the outbound notification channel."""
    return AsyncMock()


@pytest_asyncio.fixture
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()
