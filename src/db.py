"""Async SQLite connection helper shared by the message and token stores.

Every store write is a single committed statement, so a crash mid-write
leaves either the old or the new record, never a truncated one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite

from src.config import settings

if TYPE_CHECKING:
    from pathlib import Path


class TransientStoreError(Exception):
    """Raised when reading or writing a record fails at the storage layer."""


# Exceptions treated as storage failures by the stores.
STORE_ERRORS = (aiosqlite.Error, OSError)


async def get_connection(path: Path | None = None) -> aiosqlite.Connection:
    """Open a connection to *path* (default ``settings.database_path``).

    Creates the parent directory, enables WAL and sets a busy timeout so
    concurrent fires and API calls wait for each other instead of failing.
    """
    db_path = path or settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    try:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
    except aiosqlite.Error:
        await db.close()
        raise
    return db
