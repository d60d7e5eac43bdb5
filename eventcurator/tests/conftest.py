from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from eventcurator.core.config import get_settings
from eventcurator.domain.models import Base
from eventcurator.services.blobs import LocalBlobStore


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; clear around each test so env overrides stay local.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory():
    # One shared in-memory connection so every session sees the same schema and rows.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(root=tmp_path, bucket="test-bucket")
