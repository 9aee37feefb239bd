"""
Shared test configuration and fixtures for atpauth tests.
"""

import fakeredis.aioredis
import pytest
import pytest_asyncio

from social.atpauth.app.config import Settings
from tests.test_helpers import CLIENT_ID, REDIRECT_URI


@pytest.fixture
def settings() -> Settings:
    return Settings(client_id=CLIENT_ID, redirect_uris=[REDIRECT_URI])


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
