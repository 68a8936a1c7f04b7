"""
Test infrastructure for the Conduit Articles API.

Strategy
--------
- SQLite in-memory via aiosqlite keeps the suite free of a running
  Postgres; ``Database`` turns on explicit BEGIN for SQLite so the
  SAVEPOINTs used by tag replacement and the delete cascade behave.
- StaticPool forces every session onto the same in-memory connection,
  since a new connection would see an empty database.
- The test ``Database`` is put on ``app.state`` directly; ASGITransport
  does not run the lifespan, so the production pool is never created.
- All tables are created fresh before each test and dropped after.
- Redis is disabled by setting ``cache._redis = None``; the CacheManager
  treats that as a permanent miss, so tests exercise the database path.
"""
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from app.cache import cache
from app.database import Database
from app.main import app

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

database_test = Database(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

app.state.database = database_test


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    cache._redis = None
    await database_test.create_all()
    yield
    await database_test.drop_all()


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that call the service layer
    directly.  Nothing is committed; the session rolls back on close.
    """
    async with database_test.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

