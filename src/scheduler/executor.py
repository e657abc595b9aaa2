"""DeliveryExecutor — posts messages to Slack and classifies failures."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from slack_sdk.errors import SlackApiError

from src.integrations.slack_auth import INVALID_AUTH_ERRORS, make_client, slack_error_code
from src.scheduler.errors import AuthRejectedError, RemoteDeliveryError, TargetNotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable

    from slack_sdk.web.async_client import AsyncWebClient

    from src.integrations.slack_tokens import CredentialSet

logger = logging.getLogger(__name__)

TARGET_NOT_FOUND_ERRORS = frozenset({"channel_not_found", "not_in_channel", "is_archived"})

_CHANNEL_TYPES = ("public_channel", "private_channel", "im,mpim")


class DeliveryExecutor:
    """Performs Slack Web API calls on behalf of the scheduler and the API.

    Args:
        client_factory: Builds a Slack client for an access token.
    """

    def __init__(self, client_factory: Callable[[str | None], AsyncWebClient] | None = None) -> None:
        self._client_factory = client_factory or make_client

    async def deliver(self, channel: str, text: str, credential: CredentialSet) -> str:
        """Post *text* to *channel*. Returns the Slack message timestamp.

        Raises ``AuthRejectedError``, ``TargetNotFoundError`` or
        ``RemoteDeliveryError``.
        """
        client = self._client_factory(credential.access_token)
        try:
            result = await client.chat_postMessage(channel=channel, text=text)
        except SlackApiError as exc:
            code = slack_error_code(exc)
            if code in INVALID_AUTH_ERRORS:
                raise AuthRejectedError(code) from exc
            if code in TARGET_NOT_FOUND_ERRORS:
                raise TargetNotFoundError(code) from exc
            raise RemoteDeliveryError(code or str(exc)) from exc
        except Exception as exc:
            raise RemoteDeliveryError(str(exc) or type(exc).__name__) from exc

        if not result.get("ok"):
            raise RemoteDeliveryError(result.get("error") or "Failed to send message")
        ts = str(result.get("ts") or "")
        logger.info("Delivered message to channel %s (ts=%s)", channel, ts)
        return ts

    async def channel_name(self, channel: str, credential: CredentialSet) -> str:
        """Look up a channel's display name, falling back to its ID."""
        client = self._client_factory(credential.access_token)
        try:
            info = await client.conversations_info(channel=channel)
        except SlackApiError as exc:
            code = slack_error_code(exc)
            if code in INVALID_AUTH_ERRORS:
                raise AuthRejectedError(code) from exc
            if code in TARGET_NOT_FOUND_ERRORS:
                raise TargetNotFoundError(code) from exc
            logger.warning("conversations.info failed for %s: %s", channel, code or exc)
            return channel
        return (info.get("channel") or {}).get("name") or channel

    async def list_channels(self, credential: CredentialSet) -> list[dict[str, Any]]:
        """Return non-archived public, private and DM conversations, sorted by name."""
        client = self._client_factory(credential.access_token)
        try:
            responses = await asyncio.gather(
                *(client.conversations_list(types=types, limit=1000) for types in _CHANNEL_TYPES)
            )
        except SlackApiError as exc:
            code = slack_error_code(exc)
            if code in INVALID_AUTH_ERRORS:
                raise AuthRejectedError(code) from exc
            raise RemoteDeliveryError(code or str(exc)) from exc

        channels = []
        for response in responses:
            for channel in response.get("channels") or []:
                if channel.get("is_archived"):
                    continue
                channels.append({
                    "id": channel["id"],
                    "name": channel.get("name") or f"DM-{channel['id']}",
                    "isPrivate": bool(channel.get("is_private", False)),
                    "isDM": bool(channel.get("is_im") or channel.get("is_mpim")),
                })
        channels.sort(key=lambda c: c["name"].lower())
        return channels
