"""TaskQueryService — find scheduled records and drop stuck ones."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from taskmesh.queue.models import LANES, TaskState

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskmesh.ports import TaskQueue
    from taskmesh.queue.models import TaskRecord

logger = logging.getLogger(__name__)


class TaskQueryService:
    """Searches pending (delayed, queued and active) records across both lanes.

    Active records idle longer than *stale_after* seconds belong to a crashed
    or hung worker; they are removed instead of returned so that they cannot
    block re-scheduling forever.  Events in *exempt_events* (the reaper) are
    never considered stale.

    Args:
        queue: The task queue to search.
        stale_after: Seconds an active record may go without a transition.
        page_size: Maximum records fetched per lane and state.
        exempt_events: Event IDs whose active records are never removed.
    """

    def __init__(
        self,
        queue: TaskQueue,
        stale_after: float = 20.0,
        page_size: int = 100000,
        exempt_events: Iterable[str] = (),
    ) -> None:
        self._queue = queue
        self._stale_after = stale_after
        self._page_size = page_size
        self._exempt = frozenset(exempt_events)

    async def find_tasks(self, event_id: str | None = None) -> list[TaskRecord]:
        """Return pending records of both lanes, optionally for one event."""
        per_lane = await asyncio.gather(*(self._search(lane, event_id) for lane in LANES))
        return [record for records in per_lane for record in records]

    async def is_scheduled(self, event_id: str) -> bool:
        return bool(await self.find_tasks(event_id))

    async def _search(self, lane: str, event_id: str | None) -> list[TaskRecord]:
        waiting: list[TaskRecord] = []
        for state in (TaskState.DELAYED, TaskState.INACTIVE):
            waiting += await self._queue.list_by_state(lane, state, 0, self._page_size, "asc")
        active = await self._queue.list_by_state(
            lane, TaskState.ACTIVE, 0, self._page_size, "asc"
        )

        found = [r for r in waiting if event_id is None or r.event_id == event_id]
        stale: list[TaskRecord] = []
        now = datetime.now(UTC)
        for record in active:
            if event_id is not None and record.event_id != event_id:
                continue
            if record.idle_for(now) > self._stale_after and record.event_id not in self._exempt:
                stale.append(record)
            else:
                found.append(record)

        for record in stale:
            await self._remove_stale(record)
        return found

    async def _remove_stale(self, record: TaskRecord) -> None:
        try:
            await self._queue.remove(record.id)
        except Exception:
            logger.warning(
                "Could not remove stuck task %s (%s)", record.id, record.event_id, exc_info=True
            )
            return
        logger.info("Task %s (%s) expired, removed", record.id, record.event_id)
