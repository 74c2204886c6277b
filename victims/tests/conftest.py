"""Shared fixtures for the victims database tests."""

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from victims.config import Settings
from victims.main import create_app
from victims.services.victims.store import FingerprintStore


@pytest.fixture
def database_url(tmp_path) -> str:
    """Fresh SQLite file per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'victims.db'}"


@pytest_asyncio.fixture
async def store(database_url):
    store = FingerprintStore(database_url)
    await store.ensure_schema()
    yield store
    await store.close()


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(
        _env_file=None,
        database_url=database_url,
        victims_url="http://victims.test/service/v1",
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client
