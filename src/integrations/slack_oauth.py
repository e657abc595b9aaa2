"""Slack OAuth v2 authorization-code flow for connecting a workspace."""

from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from slack_sdk.errors import SlackApiError

from src.config import settings
from src.integrations.slack_auth import make_client, slack_error_code
from src.integrations.slack_tokens import CredentialSet

if TYPE_CHECKING:
    from collections.abc import Callable

    from slack_sdk.web.async_client import AsyncWebClient

    from src.integrations.slack_tokens import TokenStore

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
SCOPES = ("channels:read", "chat:write", "groups:read", "im:read", "mpim:read")
STATE_TTL_SECONDS = 3600


class OAuthStateError(Exception):
    """Raised when the callback ``state`` is unknown or expired."""


class OAuthExchangeError(Exception):
    """Raised when Slack refuses to exchange the authorization code."""


class SlackOAuthFlow:
    """Issues authorize URLs and completes the callback exchange.

    ``state`` values live in memory, are single use and expire after an hour.
    """

    def __init__(
        self,
        store: TokenStore,
        client_factory: Callable[[str | None], AsyncWebClient] | None = None,
    ) -> None:
        self._store = store
        self._client_factory = client_factory or make_client
        self._states: dict[str, float] = {}

    def authorize_url(self) -> str:
        """Return the Slack consent URL with a fresh ``state``."""
        self._purge_expired()
        state = secrets.token_hex(16)
        self._states[state] = time.time()
        params = {
            "client_id": settings.slack_client_id,
            "scope": ",".join(SCOPES),
            "state": state,
            "redirect_uri": settings.slack_redirect_uri,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def consume_state(self, state: str) -> None:
        """Accept *state* once. Raises ``OAuthStateError`` if unknown or expired."""
        issued_at = self._states.pop(state, None)
        if issued_at is None or time.time() - issued_at > STATE_TTL_SECONDS:
            msg = "Invalid or expired OAuth state"
            raise OAuthStateError(msg)

    async def complete(self, code: str, state: str) -> CredentialSet:
        """Validate *state*, exchange *code*, and store the new credentials."""
        self.consume_state(state)

        client = self._client_factory(None)
        try:
            result = await client.oauth_v2_access(
                client_id=settings.slack_client_id,
                client_secret=settings.slack_client_secret,
                code=code,
                redirect_uri=settings.slack_redirect_uri,
            )
        except SlackApiError as exc:
            msg = f"Failed to exchange code for tokens: {slack_error_code(exc) or exc}"
            raise OAuthExchangeError(msg) from exc

        if not result.get("ok") or not result.get("access_token"):
            msg = "Failed to exchange code for tokens"
            raise OAuthExchangeError(msg)

        team = result.get("team") or {}
        authed_user = result.get("authed_user") or {}
        credentials = await self._store.save(
            CredentialSet(
                access_token=result["access_token"],
                refresh_token=result.get("refresh_token") or None,
                team_id=team.get("id", ""),
                team_name=team.get("name", ""),
                user_id=authed_user.get("id", ""),
                scope=result.get("scope", ""),
            )
        )
        logger.info("OAuth successful for team: %s", credentials.team_name)
        return credentials

    def _purge_expired(self) -> None:
        cutoff = time.time() - STATE_TTL_SECONDS
        for state in [s for s, issued in self._states.items() if issued < cutoff]:
            del self._states[state]
