"""Worker — claims queued task records and runs their handlers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from taskmesh.queue.models import Failure, Success

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from taskmesh.queue.models import TaskRecord
    from taskmesh.queue.store import LibsqlTaskQueue

    Handler = Callable[[dict[str, Any]], Awaitable[Any]]

logger = logging.getLogger(__name__)


class Worker:
    """Executes the records of one lane by dispatching to event handlers.

    Each poll claims ready records up to the free concurrency and runs them
    as background tasks.  A handler's return value is stored as the record's
    success result; an exception is logged and stored as its failure.

    Args:
        queue: The task queue to claim records from.
        lane: The lane this worker consumes.
        handlers: Async callables keyed by event ID, each taking the record's context.
        concurrency: Maximum records running at once.
    """

    def __init__(
        self,
        queue: LibsqlTaskQueue,
        lane: str,
        handlers: Mapping[str, Handler],
        concurrency: int = 4,
    ) -> None:
        self._queue = queue
        self._lane = lane
        self._handlers = handlers
        self._concurrency = concurrency
        self._running: set[asyncio.Task] = set()

    @property
    def lane(self) -> str:
        return self._lane

    @property
    def busy(self) -> int:
        return len(self._running)

    async def poll(self) -> int:
        """Claim and start as many ready records as capacity allows."""
        started = 0
        while len(self._running) < self._concurrency:
            record = await self._queue.claim(self._lane)
            if record is None:
                break
            task = asyncio.create_task(self.execute(record), name=f"task:{record.id}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            started += 1
        return started

    async def execute(self, record: TaskRecord) -> None:
        """Run the handler for a claimed record and store its outcome."""
        handler = self._handlers.get(record.event_id)
        if handler is None:
            logger.warning("No handler for event %s (task %s)", record.event_id, record.id)
            await self._fail(record, f"No handler for event {record.event_id}")
            return

        logger.info("Executing task %s (%s) lane=%s", record.id, record.event_id, self._lane)
        try:
            result = await handler(record.context)
        except Exception as exc:
            logger.exception("Task execution failed: %s (%s)", record.event_id, record.id)
            await self._fail(record, str(exc))
            return
        try:
            await self._queue.complete(record.id, Success(result))
        except TypeError:
            logger.exception("Result of %s (%s) is not JSON serializable", record.event_id, record.id)
            await self._fail(record, "result is not JSON serializable")
            return
        except Exception:
            logger.exception("Could not store result of %s (%s)", record.event_id, record.id)
            await self._fail(record, "result could not be stored")
            return
        logger.info("Task executed successfully: %s (%s)", record.event_id, record.id)

    async def _fail(self, record: TaskRecord, error: str) -> None:
        try:
            await self._queue.fail(record.id, Failure(error))
        except Exception:
            logger.exception("Could not mark task %s (%s) as failed", record.id, record.event_id)

    async def stop(self) -> None:
        """Cancel in-flight handlers and wait for them to unwind."""
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running task(s) on lane %s", len(tasks), self._lane)
