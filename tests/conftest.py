import pytest
import pytest_asyncio
import httpx

from relaykit.core.db import init_db, close_db
from relaykit.testing.testing_mocks import FrozenClock

TEST_DB_URL = "sqlite://:memory:"


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with all relaykit tables."""
    await init_db(TEST_DB_URL)
    yield
    await close_db()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def client(db):
    """Async client bound to the app; the db fixture replaces the lifespan startup."""
    from relaykit.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
