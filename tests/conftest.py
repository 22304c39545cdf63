"""
Pytest configuration and shared fixtures for testing.
Points the package at a throwaway SQLite database before it is imported.
"""

import os
import tempfile

# Configure the environment BEFORE any sonar imports: settings are read at import time
_TEST_DIR = tempfile.mkdtemp(prefix="sonar-tests-")
TEST_DB_URL = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'sonar_test.db')}"

os.environ["DB_URL"] = TEST_DB_URL
os.environ["SKIP_ENV_FILE"] = "1"
os.environ["APP_ENV"] = "test"
os.environ["CACHE_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"  # Minimum cost keeps hashing fast in tests
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise in test output
os.environ["LOG_FILE"] = ""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from sonar.db import Base, create_engine_for
from sonar import db as app_db
from sonar import models  # noqa: F401  (registers tables on Base.metadata)
from sonar.cache import cache_manager


@pytest_asyncio.fixture(scope="function")
async def test_db_engine():
    """Create fresh tables for one test and route the package's sessions to them."""
    # NullPool: every session gets its own connection, like separate requests would
    engine = create_engine_for(TEST_DB_URL, poolclass=NullPool)

    test_session_maker = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    original_session = app_db.async_session
    app_db.async_session = test_session_maker

    # Tests create tables directly for speed; migrations are covered in test_migrations.py
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    app_db.async_session = original_session

    await engine.dispose()


class FakeRedis:
    """In-memory stand-in for the redis asyncio client used by CacheManager."""

    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        self._check()
        for key in keys:
            self.store.pop(key, None)

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    """Install a FakeRedis into the global cache manager for one test."""
    fake = FakeRedis()
    cache_manager._redis = fake
    yield fake
    cache_manager._redis = None


@pytest.fixture
def sample_user():
    """Sample signup data for testing."""
    return {
        "username": "pinger",
        "password": "correct horse battery",
        "real_name": "Test User",
        "blurb": "Just here to ping.",
    }


@pytest.fixture
def sample_users():
    """Multiple sample users for batch testing."""
    return [
        {"username": "alice", "password": "password-alice-123", "real_name": "Alice"},
        {"username": "bob", "password": "password-bob-12345", "real_name": "Bob"},
        {"username": "charlie", "password": "password-charlie-1", "real_name": "Charlie"},
        {"username": "diana", "password": "password-diana-123", "real_name": "Diana"},
        {"username": "eve", "password": "password-eve-12345", "real_name": "Eve"},
    ]


@pytest.fixture
def redis_factory():
    """The FakeRedis class, for tests that build their own CacheManager."""
    return FakeRedis
