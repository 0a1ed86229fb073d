"""Shared pytest fixtures for the data-access tests."""
from typing import AsyncIterator

import pytest
import pytest_asyncio

from paperless_ai_db.client import PaperlessClient
from paperless_ai_db.config import Settings
from paperless_ai_db.db import create_engine, init_models


@pytest.fixture()
def database_url(tmp_path) -> str:
    """Provide a file-backed SQLite database URL for one test."""

    return f"sqlite+aiosqlite:///{tmp_path / 'paperless.sqlite'}"


@pytest.fixture()
def app_settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        admin_initial_password="initial-secret",
        encryption_key="test-encryption-key",
        _env_file=None,
    )


@pytest_asyncio.fixture()
async def client(app_settings: Settings) -> AsyncIterator[PaperlessClient]:
    engine = create_engine(app_settings.database_url)
    await init_models(engine)
    db = PaperlessClient(engine=engine, settings=app_settings)
    async with db:
        yield db


@pytest_asyncio.fixture()
async def alice(client: PaperlessClient):
    return await client.user.create({"username": "alice", "password_hash": "x"})


@pytest_asyncio.fixture()
async def bob(client: PaperlessClient):
    return await client.user.create({"username": "bob", "password_hash": "x"})


@pytest_asyncio.fixture()
async def provider(client: PaperlessClient, alice):
    return await client.ai_provider.create(
        {
            "name": "OpenAI",
            "provider": "openai",
            "model": "gpt-4o-mini",
            "api_key": "sk-test",
            "owner_id": alice.id,
        }
    )


@pytest_asyncio.fixture()
async def instance(client: PaperlessClient, alice):
    return await client.paperless_instance.create(
        {
            "name": "Home",
            "api_url": "https://paperless.local",
            "api_token": "token",
            "owner_id": alice.id,
        }
    )
