"""Scheduler — node lifecycle and the public scheduling API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskmesh.config import settings as default_settings
from taskmesh.queue.kv import LibsqlTimestampStore
from taskmesh.queue.models import PUSH_LANE, WORK_LANE
from taskmesh.queue.store import LibsqlTaskQueue
from taskmesh.scheduler.query import TaskQueryService
from taskmesh.scheduler.reaper import REAPER_EVENT, Reaper
from taskmesh.scheduler.recurrence import RecurrentTaskDriver
from taskmesh.scheduler.registry import LocalTaskRegistry
from taskmesh.scheduler.submitter import TaskSubmitter
from taskmesh.worker import Worker

if TYPE_CHECKING:
    from collections.abc import Mapping

    from taskmesh.config import Settings
    from taskmesh.ports import TimestampStore
    from taskmesh.queue.models import TaskRecord
    from taskmesh.worker import Handler

logger = logging.getLogger(__name__)


class Scheduler:
    """Schedules one-off and recurring tasks on the shared queue.

    Holds the queue and timestamp-store handles and wires the submitter,
    recurrence driver, query service, reaper and workers around them.

    Args:
        queue: Task queue (default: libsql queue on the configured database).
        timestamps: Shared key-value store for last-run times.
        config: Settings (default: the process settings).
    """

    def __init__(
        self,
        queue: LibsqlTaskQueue | None = None,
        timestamps: TimestampStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self._settings = config or default_settings
        self._queue = queue or LibsqlTaskQueue()
        self._timestamps = timestamps or LibsqlTimestampStore()
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._registry = LocalTaskRegistry()
        self._submitter = TaskSubmitter(
            self._queue,
            push_events=self._settings.get_push_events(),
            default_timeout=self._settings.default_task_timeout,
        )
        self._query = TaskQueryService(
            self._queue,
            stale_after=self._settings.stale_active_after,
            page_size=self._settings.search_page_size,
            exempt_events=(REAPER_EVENT,),
        )
        self._driver = RecurrentTaskDriver(
            self._scheduler,
            self._registry,
            self._timestamps,
            self._query,
            self._submitter,
            enabled=False,
        )
        self._reaper = Reaper(
            self._queue,
            retention=self._settings.reaper_retention,
            page_size=self._settings.reaper_page_size,
            reap_failed=self._settings.reap_failed_tasks,
        )
        self._workers: list[Worker] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def registry(self) -> LocalTaskRegistry:
        return self._registry

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers)

    # -- Lifecycle -------------------------------------------------------------

    async def init(
        self,
        handlers: Mapping[str, Handler] | None = None,
        recurring: Mapping[str, float] | None = None,
        role: str | None = None,
    ) -> None:
        """Start the node.

        Queue maintenance always runs.  Nodes in the worker and/or pusher role
        also consume their lanes, run the reaper, and (worker role only) drive
        the *recurring* events, given as ``event_id -> interval``.
        """
        if self._running:
            logger.warning("Scheduler already initialised")
            return

        role = self._settings.role if role is None else role
        is_worker = self._settings.is_worker(role)
        is_pusher = self._settings.is_pusher(role)

        self._scheduler.add_job(
            self._queue.tick,
            trigger=IntervalTrigger(seconds=self._settings.queue_tick_interval),
            id="queue:tick",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True

        if not (is_worker or is_pusher):
            logger.info("Scheduler initialised without workers (role=%s)", role)
            return

        lane_handlers: dict[str, Handler] = dict(handlers or {})
        lane_handlers[REAPER_EVENT] = self._reaper.run
        if is_worker:
            self._start_worker(WORK_LANE, lane_handlers)
        if is_pusher:
            self._start_worker(PUSH_LANE, lane_handlers)

        self._driver.enabled = is_worker

        await self.schedule(
            REAPER_EVENT,
            {},
            interval=self._settings.reaper_interval,
            timeout=self._settings.reaper_timeout,
        )
        for event_id, interval in (recurring or {}).items():
            await self.schedule(event_id, {}, interval=interval)

        logger.info(
            "Scheduler initialised (role=%s, lanes=%s, recurring=%d)",
            role or "all",
            [w.lane for w in self._workers],
            len(self._registry),
        )

    async def shutdown(self) -> None:
        """Stop this node and unschedule every task it can see.

        Best effort: records are removed cluster-wide, but other nodes keep
        their own recurrence loops.
        """
        if not self._running:
            return

        self._driver.stop_all()
        for worker in self._workers:
            self._scheduler.remove_job(f"worker:{worker.lane}")
            await worker.stop()
        self._workers.clear()

        for event_id in {record.event_id for record in await self.get_tasks()}:
            await self.unschedule(event_id)

        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def _start_worker(self, lane: str, handlers: Mapping[str, Handler]) -> None:
        worker = Worker(self._queue, lane, handlers, concurrency=self._settings.worker_concurrency)
        self._scheduler.add_job(
            worker.poll,
            trigger=IntervalTrigger(seconds=self._settings.worker_poll_interval),
            id=f"worker:{lane}",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._workers.append(worker)
        logger.info("Worker started on lane %s", lane)

    # -- Task management -------------------------------------------------------

    async def schedule(
        self,
        event_id: str,
        context: dict[str, Any] | None = None,
        *,
        interval: float | None = None,
        delay: float | None = None,
        exclusive: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Schedule *event_id*.

        With an *interval* the event becomes a recurring task on this node and
        ``None`` is returned at once; no per-firing result is observable.
        Otherwise a one-off task is queued and its result returned (``None``
        on timeout); a handler error raises ``TaskFailedError``.
        """
        context = context or {}
        if interval:
            self._driver.start(event_id, context, interval, delay=delay, timeout=timeout)
            return None
        return await self._submitter.submit(
            event_id, context, delay=delay, exclusive=exclusive, timeout=timeout
        )

    async def unschedule(self, event_id: str) -> int:
        """Stop the local loop for *event_id* and remove its records. Returns the count removed."""
        self._driver.stop(event_id)
        removed = 0
        for record in await self._query.find_tasks(event_id):
            try:
                if await self._queue.remove(record.id):
                    removed += 1
            except Exception:
                logger.warning("Could not remove task %s (%s)", record.id, event_id, exc_info=True)
        logger.info("Unscheduled %s (%d record(s) removed)", event_id, removed)
        return removed

    async def is_scheduled(self, event_id: str) -> bool:
        """True if a delayed or active record for *event_id* exists in either lane."""
        return await self._query.is_scheduled(event_id)

    async def get_tasks(self, event_id: str | None = None) -> list[TaskRecord]:
        """Delayed and active records of both lanes, optionally for one event."""
        return await self._query.find_tasks(event_id)
