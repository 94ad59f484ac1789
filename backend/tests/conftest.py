import os
import sys
import asyncio

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# A sufficiently long JWT secret for tests
TEST_JWT_SECRET = "x" * 32
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
os.environ.setdefault("DISABLE_RATE_LIMITS", "true")
os.environ.setdefault("ALLOWED_ORIGINS", "http://testserver")

# Ensure all SQLAlchemy models are registered with the declarative Base so
# metadata.create_all creates every table when the test database is initialised.
from ladder import db, models  # noqa: F401


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    """Ensure a strong JWT secret is present for all tests."""
    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    yield


async def _reset_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.drop_all)
        await conn.run_sync(db.Base.metadata.create_all)


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Point the app at a fresh file-backed SQLite database for each test.

    A file database lets the service code, the test client and the assertions
    open independent connections, each on its own event loop.
    """

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'ladder.db'}")
    db.engine = None
    db.AsyncSessionLocal = None
    engine = db.get_engine()
    asyncio.run(_reset_schema(engine))
    yield db
    asyncio.run(engine.dispose())
    db.engine = None
    db.AsyncSessionLocal = None
