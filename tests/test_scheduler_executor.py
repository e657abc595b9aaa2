"""Tests for DeliveryExecutor — Slack sends and failure classification."""

from unittest.mock import AsyncMock

import pytest
from slack_sdk.errors import SlackApiError

from src.integrations.slack_tokens import CredentialSet
from src.scheduler.errors import (
    AuthRejectedError,
    DeliveryRejectedError,
    RemoteDeliveryError,
    TargetNotFoundError,
)
from src.scheduler.executor import DeliveryExecutor

CREDS = CredentialSet(access_token="xoxb-live", team_id="T123")


def _slack_error(code: str) -> SlackApiError:
    return SlackApiError(code, {"ok": False, "error": code})


@pytest.fixture
def executor(client_factory) -> DeliveryExecutor:
    return DeliveryExecutor(client_factory=client_factory)


# -- deliver -------------------------------------------------------------------


async def test_deliver_returns_ts(
    executor: DeliveryExecutor, slack_client: AsyncMock, client_factory
) -> None:
    ts = await executor.deliver("C123", "hello", CREDS)

    assert ts == "1700000000.000100"
    slack_client.chat_postMessage.assert_called_once_with(channel="C123", text="hello")
    assert client_factory.tokens == ["xoxb-live"]


@pytest.mark.parametrize("code", ["invalid_auth", "token_revoked", "not_authed"])
async def test_deliver_auth_rejected(
    executor: DeliveryExecutor, slack_client: AsyncMock, code: str
) -> None:
    slack_client.chat_postMessage.side_effect = _slack_error(code)
    with pytest.raises(AuthRejectedError, match=code):
        await executor.deliver("C123", "hello", CREDS)


@pytest.mark.parametrize("code", ["channel_not_found", "not_in_channel", "is_archived"])
async def test_deliver_target_not_found(
    executor: DeliveryExecutor, slack_client: AsyncMock, code: str
) -> None:
    slack_client.chat_postMessage.side_effect = _slack_error(code)
    with pytest.raises(TargetNotFoundError, match=code):
        await executor.deliver("C123", "hello", CREDS)


async def test_deliver_other_slack_error(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.chat_postMessage.side_effect = _slack_error("msg_too_long")
    with pytest.raises(RemoteDeliveryError, match="msg_too_long"):
        await executor.deliver("C123", "hello", CREDS)


async def test_deliver_not_ok_response(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.chat_postMessage.return_value = {"ok": False}
    with pytest.raises(RemoteDeliveryError, match="Failed to send message"):
        await executor.deliver("C123", "hello", CREDS)


async def test_deliver_network_error(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.chat_postMessage.side_effect = ConnectionError("connection refused")
    with pytest.raises(RemoteDeliveryError, match="connection refused") as exc_info:
        await executor.deliver("C123", "hello", CREDS)
    assert isinstance(exc_info.value, DeliveryRejectedError)


# -- channel_name --------------------------------------------------------------


async def test_channel_name(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    assert await executor.channel_name("C123", CREDS) == "general"
    slack_client.conversations_info.assert_called_once_with(channel="C123")


async def test_channel_name_falls_back_to_id(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.conversations_info.return_value = {"ok": True, "channel": {}}
    assert await executor.channel_name("D999", CREDS) == "D999"


async def test_channel_name_on_other_error(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.conversations_info.side_effect = _slack_error("missing_scope")
    assert await executor.channel_name("C123", CREDS) == "C123"


async def test_channel_name_not_found(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.conversations_info.side_effect = _slack_error("channel_not_found")
    with pytest.raises(TargetNotFoundError):
        await executor.channel_name("C404", CREDS)


# -- list_channels -------------------------------------------------------------


async def test_list_channels_filters_and_sorts(
    executor: DeliveryExecutor, slack_client: AsyncMock
) -> None:
    responses = {
        "public_channel": {"channels": [
            {"id": "C2", "name": "random"},
            {"id": "C3", "name": "old", "is_archived": True},
        ]},
        "private_channel": {"channels": [{"id": "G1", "name": "alpha", "is_private": True}]},
        "im,mpim": {"channels": [{"id": "D1", "is_im": True}]},
    }

    async def conversations_list(types: str, limit: int):
        assert limit == 1000
        return responses[types]

    slack_client.conversations_list.side_effect = conversations_list

    channels = await executor.list_channels(CREDS)

    assert channels == [
        {"id": "G1", "name": "alpha", "isPrivate": True, "isDM": False},
        {"id": "D1", "name": "DM-D1", "isPrivate": False, "isDM": True},
        {"id": "C2", "name": "random", "isPrivate": False, "isDM": False},
    ]


async def test_list_channels_auth_rejected(executor: DeliveryExecutor, slack_client: AsyncMock) -> None:
    slack_client.conversations_list.side_effect = _slack_error("invalid_auth")
    with pytest.raises(AuthRejectedError):
        await executor.list_channels(CREDS)
