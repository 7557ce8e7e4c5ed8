"""
Shared pytest fixtures for the storefront tests.

Each test gets its own file-backed SQLite database (aiosqlite driver) so that
concurrent workers use separate connections, as they would against PostgreSQL.
Redis is replaced by a recording double that implements only the list and
publish commands the pipeline uses.
"""

import pytest
import pytest_asyncio

from storefront.checkout import CheckoutInfo
from storefront.db import create_engine, create_session_factory, init_db
from tests.fixtures import RecordingRedis


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def shipping():
    return CheckoutInfo(
        shipping_name="Jane Doe",
        shipping_email="jane@example.com",
        shipping_address="1 Main St",
        shipping_city="Springfield",
        shipping_postal_code="12345",
    )
