"""Tests for SlackOAuthFlow — authorize URL, state handling and code exchange."""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from slack_sdk.errors import SlackApiError

from src.config import Settings
from src.integrations.slack_oauth import (
    AUTHORIZE_URL,
    STATE_TTL_SECONDS,
    OAuthExchangeError,
    OAuthStateError,
    SlackOAuthFlow,
)
from src.integrations.slack_tokens import TokenStore

FAKE_SETTINGS = Settings(
    slack_client_id="cid",
    slack_client_secret="csecret",
    slack_redirect_uri="https://app.test/api/auth/slack/callback",
)


@pytest.fixture(autouse=True)
def _fake_settings():
    with patch("src.integrations.slack_oauth.settings", FAKE_SETTINGS):
        yield


@pytest.fixture
def flow(tokens: TokenStore, client_factory) -> SlackOAuthFlow:
    return SlackOAuthFlow(store=tokens, client_factory=client_factory)


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


# -- authorize_url -------------------------------------------------------------


def test_authorize_url(flow: SlackOAuthFlow) -> None:
    url = flow.authorize_url()

    assert url.startswith(AUTHORIZE_URL + "?")
    params = parse_qs(urlparse(url).query)
    assert params["client_id"] == ["cid"]
    assert params["redirect_uri"] == ["https://app.test/api/auth/slack/callback"]
    assert "chat:write" in params["scope"][0].split(",")
    assert len(params["state"][0]) == 32


def test_each_url_gets_fresh_state(flow: SlackOAuthFlow) -> None:
    assert _state_from(flow.authorize_url()) != _state_from(flow.authorize_url())


# -- consume_state -------------------------------------------------------------


def test_state_is_single_use(flow: SlackOAuthFlow) -> None:
    state = _state_from(flow.authorize_url())

    flow.consume_state(state)
    with pytest.raises(OAuthStateError):
        flow.consume_state(state)


def test_unknown_state_rejected(flow: SlackOAuthFlow) -> None:
    with pytest.raises(OAuthStateError):
        flow.consume_state("forged")


def test_expired_state_rejected(flow: SlackOAuthFlow) -> None:
    with patch("src.integrations.slack_oauth.time.time", return_value=1_000_000.0):
        state = _state_from(flow.authorize_url())
    with (
        patch(
            "src.integrations.slack_oauth.time.time",
            return_value=1_000_000.0 + STATE_TTL_SECONDS + 1,
        ),
        pytest.raises(OAuthStateError),
    ):
        flow.consume_state(state)


# -- complete ------------------------------------------------------------------


async def test_complete_stores_credentials(
    flow: SlackOAuthFlow, tokens: TokenStore, slack_client: AsyncMock
) -> None:
    slack_client.oauth_v2_access.return_value = {
        "ok": True,
        "access_token": "xoxb-fresh",
        "refresh_token": "xoxe-fresh",
        "scope": "chat:write",
        "team": {"id": "T123", "name": "Acme"},
        "authed_user": {"id": "U123"},
    }
    state = _state_from(flow.authorize_url())

    creds = await flow.complete("the-code", state)

    slack_client.oauth_v2_access.assert_called_once_with(
        client_id="cid",
        client_secret="csecret",
        code="the-code",
        redirect_uri="https://app.test/api/auth/slack/callback",
    )
    assert creds.team_name == "Acme"
    stored = await tokens.load()
    assert stored.access_token == "xoxb-fresh"
    assert stored.refresh_token == "xoxe-fresh"
    assert stored.user_id == "U123"


async def test_complete_with_bad_state_skips_exchange(
    flow: SlackOAuthFlow, slack_client: AsyncMock
) -> None:
    with pytest.raises(OAuthStateError):
        await flow.complete("the-code", "forged")
    slack_client.oauth_v2_access.assert_not_called()


async def test_complete_exchange_rejected(
    flow: SlackOAuthFlow, tokens: TokenStore, slack_client: AsyncMock
) -> None:
    slack_client.oauth_v2_access.side_effect = SlackApiError(
        "invalid_code", {"ok": False, "error": "invalid_code"}
    )
    state = _state_from(flow.authorize_url())

    with pytest.raises(OAuthExchangeError, match="invalid_code"):
        await flow.complete("bad-code", state)
    assert await tokens.load() is None


async def test_complete_without_access_token(
    flow: SlackOAuthFlow, tokens: TokenStore, slack_client: AsyncMock
) -> None:
    slack_client.oauth_v2_access.return_value = {"ok": True}
    state = _state_from(flow.authorize_url())

    with pytest.raises(OAuthExchangeError):
        await flow.complete("the-code", state)
    assert await tokens.load() is None
