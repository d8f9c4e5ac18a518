import pytest
import pytest_asyncio

from raven.core.config import Settings
from raven.core.database import Database
from raven.core.flags import FeatureFlags

from fakes import sqlite_url


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(sqlite_url(tmp_path / "raven.db"))
    await database.init_schema()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def db_without_memory(tmp_path):
    database = Database(sqlite_url(tmp_path / "raven-no-memory.db"))
    await database.init_schema(include_memory=False)
    yield database
    await database.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=sqlite_url(tmp_path / "raven-app.db"),
        QUOTA_LIMIT_BASE=3,
        QUOTA_LIMIT_VIP=5,
        QUOTA_LIMIT_DEV=100,
        JWT_SECRET="test-secret",
        LOG_LEVEL="warning",
    )


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags(_env_file=None, FF_USE_AUTH=False, FF_USE_REDIS=False)
