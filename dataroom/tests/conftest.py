from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any dataroom module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="dataroom-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/dataroom.db"
os.environ["STORAGE_PROVIDER"] = "fake"
os.environ["WATERMARK_SECRET"] = "test-watermark-secret"
os.environ["PUBLIC_BASE_URL"] = "https://rooms.test"

import pytest  # noqa: E402

from dataroom.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

from dataroom.domain.models import Base  # noqa: E402
from dataroom.persistence.db import SessionLocal, engine  # noqa: E402
from dataroom.providers.storage.fake import FakeObjectStore  # noqa: E402
from dataroom.services.resilience import RetryPolicy  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema() -> None:
    # Rebuild every table so each test starts from an empty data room store.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore(base_url="https://storage.test", secret="test-store-secret")


@pytest.fixture
def fast_retry() -> RetryPolicy:
    # Keep retry tests quick; attempts match the production default.
    return RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1)
