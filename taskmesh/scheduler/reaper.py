"""Reaper — periodic removal of old finished task records."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskmesh.queue.models import TaskState

if TYPE_CHECKING:
    from taskmesh.ports import TaskQueue
    from taskmesh.queue.models import TaskRecord

logger = logging.getLogger(__name__)

REAPER_EVENT = "taskmesh.reaper"


class Reaper:
    """Deletes completed records older than *retention* seconds.

    Runs as the handler of :data:`REAPER_EVENT`, which the scheduler fires as
    a recurring task.  A record that cannot be removed is logged and left for
    the next run.  With *reap_failed*, failed records (handler errors and
    timed-out submissions) are swept under the same retention.
    """

    def __init__(
        self,
        queue: TaskQueue,
        retention: float = 30.0,
        page_size: int = 2000,
        reap_failed: bool = False,
    ) -> None:
        self._queue = queue
        self._retention = retention
        self._page_size = page_size
        self._states = [TaskState.COMPLETE]
        if reap_failed:
            self._states.append(TaskState.FAILED)

    async def run(self, context: dict[str, Any] | None = None) -> int:
        """Reap one page of finished records per state. Returns the number removed."""
        logger.info("Running reaper")
        now = datetime.now(UTC)
        expired: list[TaskRecord] = []
        for state in self._states:
            records = await self._queue.list_by_state(None, state, 0, self._page_size, "asc")
            expired.extend(r for r in records if r.age(now) > self._retention)
        if not expired:
            logger.info("Cleaned up nothing")
            return 0

        removed = 0
        for record in expired:
            removed += await self._remove(record)
        logger.info("Cleaned up %d of %d expired task(s)", removed, len(expired))
        return removed

    async def _remove(self, record: TaskRecord) -> bool:
        try:
            removed = await self._queue.remove(record.id)
        except Exception:
            logger.warning(
                "Could not reap task %s (%s)", record.id, record.event_id, exc_info=True
            )
            return False
        if removed:
            logger.debug("Task %s (%s) reaped", record.id, record.event_id)
        return removed
