"""LibsqlTimestampStore — shared string key-value store with expiry."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from taskmesh.db import connect

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from taskmesh.db import _AsyncConnection

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
)
"""


class LibsqlTimestampStore:
    """Keeps small string values (e.g. ``"<event>:lastrun"``) in SQLite / Turso.

    Expiry is wall-clock based so that every node agrees on it; expired keys
    read as absent and are deleted on access.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[_AsyncConnection]:
        async with connect(self._db_path) as db:
            if not self._initialised:
                await db.execute(_CREATE_TABLE)
                await db.commit()
                self._initialised = True
            yield db

    async def get(self, key: str) -> str | None:
        """Return the value stored under *key*, or None if absent or expired."""
        async with self._session() as db:
            cursor = await db.execute(
                "SELECT value, expires_at FROM kv_store WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is None or expires_at > time.time():
                return value
            await db.execute(
                "DELETE FROM kv_store WHERE key = ? AND expires_at = ?", (key, expires_at)
            )
            await db.commit()
        logger.debug("Key %s expired", key)
        return None

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """Store *value* under *key*, replacing any previous value and expiry."""
        expires_at = time.time() + ttl if ttl is not None else None
        async with self._session() as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, str(value), expires_at),
            )
            await db.commit()

    async def expire(self, key: str, ttl: float) -> bool:
        """Expire *key* after *ttl* seconds. Returns True if the key exists."""
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE kv_store SET expires_at = ? WHERE key = ?", (time.time() + ttl, key)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete(self, key: str) -> bool:
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0
