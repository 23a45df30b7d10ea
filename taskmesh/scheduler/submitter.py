"""TaskSubmitter — create one-off task records and wait for their outcome."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from taskmesh.queue.models import Failure, lane_for

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskmesh.ports import TaskQueue
    from taskmesh.queue.models import TaskRecord

logger = logging.getLogger(__name__)


class TaskFailedError(Exception):
    """A handler reported an error for a submitted task.

    Attributes:
        event_id: The event whose handler failed.
        error: The error payload stored with the record.
    """

    def __init__(self, event_id: str, error: Any) -> None:
        super().__init__(f"Task {event_id} failed: {error}")
        self.event_id = event_id
        self.error = error


class TaskSubmitter:
    """Submits one-off tasks to the queue and races completion against a watchdog.

    A task that reaches no terminal state before its timeout is forced to
    ``failed`` and its caller gets ``None``; running out of time is "nothing
    to report", not an error.  A handler-reported failure raises
    :class:`TaskFailedError`.

    Args:
        queue: The task queue records are created in.
        push_events: Event IDs routed to the push lane.
        default_timeout: Watchdog timeout in seconds when none is given.
    """

    def __init__(
        self,
        queue: TaskQueue,
        push_events: Iterable[str] = (),
        default_timeout: float = 60.0,
    ) -> None:
        self._queue = queue
        self._push_events = frozenset(push_events)
        self._default_timeout = default_timeout

    def lane_for(self, event_id: str) -> str:
        return lane_for(event_id, self._push_events)

    async def submit(
        self,
        event_id: str,
        context: dict[str, Any] | None = None,
        delay: float | None = None,
        exclusive: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Create a record for *event_id* and return its handler's result.

        Returns ``None`` on timeout or when the finished record carries no
        result.  Raises :class:`TaskFailedError` when the handler failed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or self._default_timeout)

        meta: dict[str, Any] = {}
        if delay:
            meta["delay"] = delay
        if exclusive:
            meta["exclusive"] = True
        if timeout:
            meta["timeout"] = timeout

        record = self._queue.create(self.lane_for(event_id), event_id, context or {}, meta)

        completed: asyncio.Future[str] = loop.create_future()

        def _on_complete(task_id: str) -> None:
            if not completed.done():
                completed.set_result(task_id)

        # Subscribe before saving so a fast worker cannot finish unobserved.
        self._queue.subscribe(record.id, _on_complete)
        try:
            await self._queue.save(record, delay=delay)
            logger.debug("Scheduled task: %s (%s) lane=%s", event_id, record.id, record.lane)
            try:
                await asyncio.wait_for(completed, max(deadline - loop.time(), 0))
            except TimeoutError:
                timed_out = True
            else:
                timed_out = False
        finally:
            self._queue.unsubscribe(record.id, _on_complete)

        if timed_out:
            logger.debug("Failed task %s (%s) due to timeout", record.id, event_id)
            await self._expire(record)
            return None
        return await self._collect(record)

    async def _expire(self, record: TaskRecord) -> None:
        try:
            await self._queue.fail(record.id)
        except Exception:
            logger.warning(
                "Could not mark timed-out task %s (%s) as failed",
                record.id,
                record.event_id,
                exc_info=True,
            )

    async def _collect(self, record: TaskRecord) -> Any:
        """Read the finished record and turn its stored result into an outcome."""
        try:
            latest = await self._queue.get(record.id)
        except Exception:
            logger.warning(
                "Could not read result of task %s (%s)", record.id, record.event_id, exc_info=True
            )
            return None

        if latest is None or latest.result is None:
            return None
        if isinstance(latest.result, Failure):
            raise TaskFailedError(record.event_id, latest.result.error)
        return latest.result.value
