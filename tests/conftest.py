import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("SHOPIFY_ACCESS_TOKEN", "test-token")

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base
from services.concurrency_control import ConcurrencyController
from services.storage import StorageService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage(session_factory):
    return StorageService(session_factory)


@pytest.fixture
def locks():
    return ConcurrencyController()
