"""Slack credential validation and refresh — single-workspace manager."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from src.config import settings
from src.integrations.slack_tokens import CredentialSet, TokenStore

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

# Slack error codes that mean the token itself is no good.
INVALID_AUTH_ERRORS = frozenset({
    "invalid_auth",
    "not_authed",
    "token_expired",
    "token_revoked",
    "account_inactive",
})


class CredentialUnavailableError(Exception):
    """Raised when no usable Slack credential is stored."""


class CredentialCheckError(Exception):
    """Raised when validity could not be determined (network, rate limit, ...)."""


def make_client(token: str | None = None) -> AsyncWebClient:
    """Build an async Slack Web API client, optionally bound to *token*."""
    return AsyncWebClient(token=token)


def slack_error_code(exc: SlackApiError) -> str:
    """Return the ``error`` field of a Slack API error response."""
    response = exc.response
    if response is None:
        return ""
    try:
        return str(response.get("error", "") or "")
    except AttributeError:
        return ""


class SlackAuthManager:
    """Keeps the stored Slack credentials valid.

    Validation is a cheap ``auth.test`` call. When Slack reports the token as
    invalid, the refresh token (if any) is exchanged for a new access token.
    When that is impossible the credentials are deleted, so the workspace
    reads as disconnected until the user authorizes again.

    Args:
        store: TokenStore holding the single credential set.
        client_factory: Builds a Slack client for a token (test seam).
        client_id: Slack app client ID (default from settings).
        client_secret: Slack app client secret (default from settings).
    """

    def __init__(
        self,
        store: TokenStore,
        client_factory: Callable[[str | None], AsyncWebClient] | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self._store = store
        self._client_factory = client_factory or make_client
        self._client_id = client_id if client_id is not None else settings.slack_client_id
        self._client_secret = (
            client_secret if client_secret is not None else settings.slack_client_secret
        )

    async def ensure_valid(self) -> bool:
        """Return True if usable credentials exist, refreshing them if needed.

        Raises ``CredentialCheckError`` when Slack could not give a definite
        answer. Credentials are only deleted on an explicit invalid-token
        signal followed by a failed or impossible refresh.
        """
        creds = await self._store.load()
        if creds is None or not creds.access_token:
            return False

        client = self._client_factory(creds.access_token)
        try:
            await client.auth_test()
            return True
        except SlackApiError as exc:
            code = slack_error_code(exc)
            if code not in INVALID_AUTH_ERRORS:
                msg = f"Slack auth.test failed: {code or exc}"
                raise CredentialCheckError(msg) from exc
            logger.info("Slack token rejected (%s), attempting refresh", code)
        except Exception as exc:
            msg = f"Slack auth.test failed: {exc}"
            raise CredentialCheckError(msg) from exc

        if creds.refresh_token:
            refreshed = await self._refresh(creds)
            if refreshed is not None:
                await self._store.save(refreshed)
                logger.info("Slack tokens refreshed successfully")
                return True

        await self._store.delete()
        logger.warning("Slack token refresh failed, tokens deleted")
        return False

    async def _refresh(self, creds: CredentialSet) -> CredentialSet | None:
        """Exchange the refresh token. Returns None if Slack refuses."""
        client = self._client_factory(None)
        try:
            result = await client.oauth_v2_access(
                client_id=self._client_id,
                client_secret=self._client_secret,
                grant_type="refresh_token",
                refresh_token=creds.refresh_token,
            )
        except SlackApiError as exc:
            logger.warning("Slack token refresh rejected: %s", slack_error_code(exc) or exc)
            return None
        except Exception as exc:
            msg = f"Slack token refresh failed: {exc}"
            raise CredentialCheckError(msg) from exc

        if not result.get("ok") or not result.get("access_token"):
            logger.warning("Slack token refresh returned no access token")
            return None
        return creds.refreshed(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token"),
            scope=result.get("scope"),
        )

    async def get_credentials(self) -> CredentialSet:
        """Return the stored credentials or raise ``CredentialUnavailableError``."""
        creds = await self._store.load()
        if creds is None or not creds.access_token:
            msg = "No valid Slack tokens found"
            raise CredentialUnavailableError(msg)
        return creds

    async def live_credentials(self) -> CredentialSet:
        """Validate (refreshing if needed) and return the current credentials."""
        if not await self.ensure_valid():
            msg = "No valid Slack credentials"
            raise CredentialUnavailableError(msg)
        return await self.get_credentials()
