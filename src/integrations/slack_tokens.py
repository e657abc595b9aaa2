"""TokenStore — single-slot persistence for the Slack workspace credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from src.config import settings
from src.db import STORE_ERRORS, TransientStoreError, get_connection

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS slack_tokens (
    slot INTEGER PRIMARY KEY CHECK (slot = 1),
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    team_id TEXT NOT NULL DEFAULT '',
    team_name TEXT NOT NULL DEFAULT '',
    user_id TEXT NOT NULL DEFAULT '',
    scope TEXT NOT NULL DEFAULT '',
    expires_at TEXT,
    updated_at TEXT NOT NULL
)
"""


@dataclass
class CredentialSet:
    """OAuth credentials for the single connected Slack workspace."""

    access_token: str
    refresh_token: str | None = None
    team_id: str = ""
    team_name: str = ""
    user_id: str = ""
    scope: str = ""
    expires_at: str | None = None
    updated_at: str = ""

    def refreshed(
        self,
        access_token: str,
        refresh_token: str | None = None,
        scope: str | None = None,
    ) -> CredentialSet:
        """Return a copy with new token fields and the same workspace identity."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            scope=scope or self.scope,
            expires_at=None,
        )

    def to_row(self) -> tuple:
        return (
            1,
            self.access_token,
            self.refresh_token,
            self.team_id,
            self.team_name,
            self.user_id,
            self.scope,
            self.expires_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> CredentialSet:
        return cls(
            access_token=row[1],
            refresh_token=row[2],
            team_id=row[3],
            team_name=row[4],
            user_id=row[5],
            scope=row[6],
            expires_at=row[7],
            updated_at=row[8],
        )


class TokenStore:
    """Holds at most one ``CredentialSet``, replaced or removed as a whole.

    Singleton accessed via ``TokenStore.get()``.  Pass an explicit *db_path*
    for test isolation.
    """

    _instance: TokenStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> TokenStore:
        """Return the shared TokenStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True
        return db

    async def _execute(self, sql: str, params: tuple = ()) -> list[tuple]:
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(sql, params)
                rows = list(await cursor.fetchall())
                await db.commit()
                return rows
            finally:
                await db.close()
        except STORE_ERRORS as exc:
            msg = f"Slack token storage failed: {exc}"
            raise TransientStoreError(msg) from exc

    async def load(self) -> CredentialSet | None:
        """Return the stored credentials, or None when not connected."""
        rows = await self._execute("SELECT * FROM slack_tokens WHERE slot = 1")
        return CredentialSet.from_row(rows[0]) if rows else None

    async def save(self, credentials: CredentialSet) -> CredentialSet:
        """Replace the stored credentials, stamping ``updated_at``."""
        stored = replace(credentials, updated_at=datetime.now(UTC).isoformat())
        await self._execute(
            "INSERT OR REPLACE INTO slack_tokens VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            stored.to_row(),
        )
        logger.info("Slack tokens saved (team=%s)", stored.team_name or stored.team_id)
        return stored

    async def delete(self) -> None:
        """Remove the stored credentials. No-op when none exist."""
        await self._execute("DELETE FROM slack_tokens WHERE slot = 1")
        logger.info("Slack tokens deleted")

    async def is_connected(self) -> bool:
        """True if a credential set with an access token is stored."""
        creds = await self.load()
        return bool(creds and creds.access_token)
