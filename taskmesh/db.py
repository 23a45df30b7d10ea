"""Async connections to the shared libsql database.

Every queue and key-value operation goes through here.  The synchronous
``libsql`` driver runs in worker threads (``asyncio.to_thread``), so store
I/O is a suspension point of the event loop.

Where the connection goes:

- ``TURSO_DATABASE_URL`` set: the remote Turso database every node shares
- otherwise: a local SQLite file at ``DATABASE_PATH``, shared by the nodes
  of one host

Stores use :func:`connect`, which scopes one connection to a block of work.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import libsql

from taskmesh.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

# Per event loop, one lock per database target: units of work on the same
# database never overlap within a process.
_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


class _AsyncCursor:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


class _AsyncConnection:
    """Awaitable facade over one libsql connection."""

    def __init__(self, conn: Any, target: str) -> None:
        self._conn = conn
        self.target = target

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        return _AsyncCursor(await asyncio.to_thread(self._conn.execute, sql, params))

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def rollback(self) -> None:
        await asyncio.to_thread(self._conn.rollback)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_file(path: Path) -> Any:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = libsql.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(settings.database_busy_timeout * 1000)}")
    return conn


def _target(local_path_override: Path | None) -> str:
    if not local_path_override and settings.turso_database_url:
        return settings.turso_database_url
    return str(local_path_override or settings.database_path)


def _lock_for(target: str) -> asyncio.Lock:
    per_loop = _locks.setdefault(asyncio.get_running_loop(), {})
    return per_loop.setdefault(target, asyncio.Lock())


async def get_connection(local_path_override: Path | None = None) -> _AsyncConnection:
    """Open a connection; the caller closes it.

    *local_path_override* (per-store database files, test isolation) wins,
    then ``TURSO_DATABASE_URL``, then ``database_path``.
    """
    if not local_path_override and settings.turso_database_url:
        conn = await asyncio.to_thread(
            libsql.connect,
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
        return _AsyncConnection(conn, settings.turso_database_url)

    path = local_path_override or settings.database_path
    conn = await asyncio.to_thread(_open_file, path)
    return _AsyncConnection(conn, str(path))


@asynccontextmanager
async def connect(local_path_override: Path | None = None) -> AsyncIterator[_AsyncConnection]:
    """Yield a connection for one unit of work.

    Units of work on the same database run one at a time within a process.
    Uncommitted changes are rolled back if the block raises; the connection
    is always closed.
    """
    async with _lock_for(_target(local_path_override)):
        db = await get_connection(local_path_override)
        try:
            yield db
        except Exception:
            try:
                await db.rollback()
            except Exception:
                logger.debug("Rollback failed on %s", db.target, exc_info=True)
            raise
        finally:
            await db.close()
