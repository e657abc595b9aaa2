"""MessageStore — aiosqlite persistence for scheduled messages."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from src.config import settings
from src.db import STORE_ERRORS, TransientStoreError, get_connection
from src.scheduler.errors import MessageNotFoundError
from src.scheduler.models import MessageStatus, ScheduledMessage

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduled_messages (
    id TEXT PRIMARY KEY,
    channel TEXT NOT NULL,
    channel_name TEXT NOT NULL,
    message TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    sent_at TEXT,
    error TEXT
)
"""

_COLUMNS = (
    "id, channel, channel_name, message, scheduled_at, status, created_at, sent_at, error"
)

# Seconds to wait before the second write attempt; doubles on each retry.
_RETRY_DELAY = 0.05
_RETRYABLE = (aiosqlite.OperationalError, OSError)


class MessageStore:
    """Persists scheduled messages in SQLite.

    Records are never deleted; cancellation is a status transition. Status
    changes are compare-and-swap updates that only apply while the stored
    status is still ``pending``.

    Singleton accessed via ``MessageStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: MessageStore | None = None

    def __init__(self, db_path: Path | None = None, write_attempts: int | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._write_attempts = max(1, write_attempts or settings.store_write_attempts)
        self._initialised = False

    @classmethod
    def get(cls) -> MessageStore:
        """Return the shared MessageStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        db = await get_connection(self._db_path)
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True
        return db

    async def _fetch(self, sql: str, params: tuple = ()) -> list[tuple]:
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(sql, params)
                return list(await cursor.fetchall())
            finally:
                await db.close()
        except STORE_ERRORS as exc:
            msg = f"Failed to read scheduled messages: {exc}"
            raise TransientStoreError(msg) from exc

    async def _write(self, sql: str, params: tuple) -> int:
        """Run a single-statement write, retrying transient failures.

        Returns the number of rows affected.
        """
        delay = _RETRY_DELAY
        for attempt in range(1, self._write_attempts + 1):
            try:
                db = await self._connect()
                try:
                    cursor = await db.execute(sql, params)
                    await db.commit()
                    return cursor.rowcount
                finally:
                    await db.close()
            except STORE_ERRORS as exc:
                if attempt >= self._write_attempts or not isinstance(exc, _RETRYABLE):
                    msg = f"Failed to write scheduled message after {attempt} attempt(s): {exc}"
                    raise TransientStoreError(msg) from exc
                logger.warning(
                    "Store write failed (attempt %d/%d): %s", attempt, self._write_attempts, exc
                )
                await asyncio.sleep(delay)
                delay *= 2
        return 0

    # -- CRUD ------------------------------------------------------------------

    async def add_message(self, message: ScheduledMessage) -> ScheduledMessage:
        """Append a new message record. Returns the same object."""
        await self._write(
            f"INSERT INTO scheduled_messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            message.to_row(),
        )
        logger.info("Stored scheduled message: %s (%s)", message.id, message.status)
        return message

    async def get_message(self, message_id: str) -> ScheduledMessage | None:
        """Fetch a message by ID, or None if not found."""
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM scheduled_messages WHERE id = ?", (message_id,)
        )
        return ScheduledMessage.from_row(rows[0]) if rows else None

    async def list_messages(self) -> list[ScheduledMessage]:
        """Return every message, oldest first."""
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM scheduled_messages ORDER BY created_at"
        )
        return [ScheduledMessage.from_row(row) for row in rows]

    async def list_pending(self) -> list[ScheduledMessage]:
        """Return all messages still waiting to be delivered."""
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM scheduled_messages WHERE status = ? ORDER BY scheduled_at",
            (MessageStatus.PENDING.value,),
        )
        return [ScheduledMessage.from_row(row) for row in rows]

    # -- Status transitions ----------------------------------------------------

    async def transition(
        self,
        message_id: str,
        status: MessageStatus,
        error: str | None = None,
    ) -> bool:
        """Move a ``pending`` message to *status*.

        The check and the write are one UPDATE statement, so a message that
        already reached a terminal status is never overwritten. Returns True
        if the row changed. ``sent_at`` is stamped only when moving to ``sent``;
        ``error`` is left untouched when None.
        """
        status = MessageStatus(status)
        if status is MessageStatus.PENDING:
            msg = "Cannot transition a message back to pending"
            raise ValueError(msg)
        sent_at = datetime.now(UTC).isoformat() if status is MessageStatus.SENT else None
        updated = await self._write(
            """
            UPDATE scheduled_messages
               SET status = ?,
                   sent_at = COALESCE(?, sent_at),
                   error = COALESCE(?, error)
             WHERE id = ? AND status = ?
            """,
            (status.value, sent_at, error, message_id, MessageStatus.PENDING.value),
        )
        if updated:
            logger.info("Message %s -> %s", message_id, status)
        return updated > 0

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        error: str | None = None,
    ) -> bool:
        """Like ``transition`` but raises ``MessageNotFoundError`` for unknown ids.

        Returns False when the message exists but is already terminal.
        """
        if await self.transition(message_id, status, error):
            return True
        if await self.get_message(message_id) is None:
            raise MessageNotFoundError(message_id)
        return False
