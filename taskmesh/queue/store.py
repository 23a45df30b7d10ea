"""LibsqlTaskQueue — persistent multi-consumer task queue on libsql."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from taskmesh.db import connect
from taskmesh.queue.models import (
    LANES,
    TaskRecord,
    TaskState,
    encode_result,
    make_task_id,
    timestamp,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from taskmesh.db import _AsyncConnection
    from taskmesh.ports import CompletionCallback
    from taskmesh.queue.models import TaskResult

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS task_records (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    lane TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '{}',
    meta TEXT NOT NULL DEFAULT '{}',
    state TEXT NOT NULL,
    result TEXT,
    run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS task_records_lane_state
    ON task_records (lane, state, created_at)
"""

_COLUMNS = "id, event_id, lane, context, meta, state, result, run_at, created_at, updated_at"

_ORDERS = {"asc": "ASC", "desc": "DESC"}


class LibsqlTaskQueue:
    """Stores task records in SQLite / Turso and tracks their completion.

    Completion notifications for transitions made through this instance are
    delivered immediately; transitions made by other processes are picked up
    by :meth:`tick`, which the scheduler runs periodically.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False
        self._listeners: dict[str, list[CompletionCallback]] = {}

    # -- Internal helpers ------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[_AsyncConnection]:
        async with connect(self._db_path) as db:
            if not self._initialised:
                await db.execute(_CREATE_TABLE)
                await db.execute(_CREATE_INDEX)
                await db.commit()
                self._initialised = True
            yield db

    async def _transition(
        self,
        task_id: str,
        state: TaskState,
        result: TaskResult | None,
    ) -> bool:
        payload = encode_result(result)
        async with self._session() as db:
            cursor = await db.execute(
                """
                UPDATE task_records
                SET state = ?, result = COALESCE(?, result), updated_at = ?
                WHERE id = ?
                """,
                (state.value, payload, timestamp(), task_id),
            )
            await db.commit()
            updated = cursor.rowcount > 0
        if updated:
            self._notify(task_id)
        return updated

    def _notify(self, task_id: str) -> None:
        for callback in self._listeners.pop(task_id, []):
            try:
                callback(task_id)
            except Exception:
                logger.exception("Completion callback failed for task %s", task_id)

    # -- Creation --------------------------------------------------------------

    def create(
        self,
        lane: str,
        event_id: str,
        context: dict[str, Any],
        meta: dict[str, Any],
    ) -> TaskRecord:
        """Build an unsaved record. Nothing is written until :meth:`save`."""
        if lane not in LANES:
            msg = f"Unknown lane: {lane}"
            raise ValueError(msg)
        return TaskRecord(
            id=make_task_id(),
            event_id=event_id,
            lane=lane,
            context=context,
            meta=meta,
        )

    async def save(self, record: TaskRecord, delay: float | None = None) -> TaskRecord:
        """Insert *record*, delayed by *delay* seconds when given."""
        if delay:
            record.state = TaskState.DELAYED
            record.run_at = timestamp(datetime.now(UTC) + timedelta(seconds=delay))
        async with self._session() as db:
            await db.execute(
                f"INSERT INTO task_records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                record.to_row(),
            )
            await db.commit()
        logger.debug(
            "Saved task %s (%s) lane=%s state=%s",
            record.id,
            record.event_id,
            record.lane,
            record.state,
        )
        return record

    # -- Completion notifications ----------------------------------------------

    def subscribe(self, task_id: str, callback: CompletionCallback) -> None:
        """Call *callback* once the record reaches a terminal state."""
        self._listeners.setdefault(task_id, []).append(callback)

    def unsubscribe(self, task_id: str, callback: CompletionCallback) -> None:
        callbacks = self._listeners.get(task_id)
        if not callbacks:
            return
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            del self._listeners[task_id]

    @property
    def subscribed(self) -> set[str]:
        return set(self._listeners)

    async def dispatch_notifications(self) -> int:
        """Notify listeners of records another process moved to a terminal state."""
        pending = list(self._listeners)
        if not pending:
            return 0
        placeholders = ", ".join("?" for _ in pending)
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT id FROM task_records WHERE id IN ({placeholders}) AND state IN (?, ?)",
                (*pending, TaskState.COMPLETE.value, TaskState.FAILED.value),
            )
            rows = await cursor.fetchall()
        for row in rows:
            self._notify(row[0])
        return len(rows)

    # -- Reads -----------------------------------------------------------------

    async def get(self, task_id: str) -> TaskRecord | None:
        """Fetch a record by ID, or None if not found."""
        async with self._session() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM task_records WHERE id = ?", (task_id,)
            )
            row = await cursor.fetchone()
            return TaskRecord.from_row(row) if row else None

    async def list_by_state(
        self,
        lane: str | None,
        state: TaskState,
        offset: int = 0,
        limit: int = 1000,
        order: str = "asc",
    ) -> list[TaskRecord]:
        """Return a page of records in *state*, oldest first by default.

        *lane* ``None`` lists every lane.
        """
        direction = _ORDERS.get(order)
        if direction is None:
            msg = f"Unknown order: {order}"
            raise ValueError(msg)
        state = TaskState(state)
        where = "state = ?"
        params: tuple = (state.value,)
        if lane is not None:
            where += " AND lane = ?"
            params += (lane,)
        async with self._session() as db:
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM task_records
                WHERE {where}
                ORDER BY created_at {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            )
            rows = await cursor.fetchall()
            return [TaskRecord.from_row(row) for row in rows]

    # -- State transitions -----------------------------------------------------

    async def claim(self, lane: str) -> TaskRecord | None:
        """Move the oldest inactive record of *lane* to active and return it.

        The update is conditional on the record still being inactive, so two
        consumers never claim the same record.
        """
        async with self._session() as db:
            for _ in range(3):
                cursor = await db.execute(
                    """
                    SELECT id FROM task_records
                    WHERE lane = ? AND state = ?
                    ORDER BY created_at, id
                    LIMIT 1
                    """,
                    (lane, TaskState.INACTIVE.value),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                cursor = await db.execute(
                    "UPDATE task_records SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                    (TaskState.ACTIVE.value, timestamp(), row[0], TaskState.INACTIVE.value),
                )
                await db.commit()
                if cursor.rowcount > 0:
                    cursor = await db.execute(
                        f"SELECT {_COLUMNS} FROM task_records WHERE id = ?", (row[0],)
                    )
                    claimed = await cursor.fetchone()
                    return TaskRecord.from_row(claimed) if claimed else None
            return None

    async def complete(self, task_id: str, result: TaskResult | None = None) -> bool:
        """Mark a record complete, storing *result*. Returns True if it existed."""
        return await self._transition(task_id, TaskState.COMPLETE, result)

    async def fail(self, task_id: str, result: TaskResult | None = None) -> bool:
        """Mark a record failed, storing *result* when given. Returns True if it existed."""
        return await self._transition(task_id, TaskState.FAILED, result)

    async def promote_due(self) -> int:
        """Move delayed records whose run time has passed to inactive."""
        now = timestamp()
        async with self._session() as db:
            cursor = await db.execute(
                """
                UPDATE task_records SET state = ?, updated_at = ?
                WHERE state = ? AND run_at <= ?
                """,
                (TaskState.INACTIVE.value, now, TaskState.DELAYED.value, now),
            )
            await db.commit()
            promoted = cursor.rowcount
        if promoted:
            logger.debug("Promoted %d delayed task(s)", promoted)
        return promoted

    async def tick(self) -> None:
        """Periodic maintenance: promote due records, deliver notifications."""
        await self.promote_due()
        await self.dispatch_notifications()

    # -- Removal ---------------------------------------------------------------

    async def remove(self, task_id: str) -> bool:
        """Delete a record. Returns True if a row was deleted."""
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM task_records WHERE id = ?", (task_id,))
            await db.commit()
            return cursor.rowcount > 0
