"""Shared test fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from src.integrations.slack_tokens import TokenStore
from src.scheduler.store import MessageStore


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
async def store(db_path: Path) -> MessageStore:
    """Create a MessageStore backed by a temp database."""
    return MessageStore(db_path=db_path)


@pytest.fixture
async def tokens(db_path: Path) -> TokenStore:
    """Create a TokenStore backed by the same temp database."""
    return TokenStore(db_path=db_path)


@pytest.fixture
def slack_client() -> AsyncMock:
    """A fake AsyncWebClient whose API methods succeed by default."""
    client = AsyncMock()
    client.auth_test.return_value = {"ok": True, "team_id": "T123"}
    client.chat_postMessage.return_value = {"ok": True, "ts": "1700000000.000100"}
    client.conversations_info.return_value = {"ok": True, "channel": {"name": "general"}}
    return client


@pytest.fixture
def client_factory(slack_client: AsyncMock):
    """Client factory returning ``slack_client`` and recording the tokens used."""

    def factory(token: str | None = None) -> AsyncMock:
        factory.tokens.append(token)
        return slack_client

    factory.tokens = []
    return factory
