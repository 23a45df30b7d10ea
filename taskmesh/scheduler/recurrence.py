"""RecurrentTaskDriver — exclusive recurring tasks across the cluster."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from taskmesh.scheduler.submitter import TaskFailedError

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from taskmesh.ports import TimestampStore
    from taskmesh.scheduler.query import TaskQueryService
    from taskmesh.scheduler.registry import LocalTaskRegistry
    from taskmesh.scheduler.submitter import TaskSubmitter

logger = logging.getLogger(__name__)


def lastrun_key(event_id: str) -> str:
    return f"{event_id}:lastrun"


def job_id(event_id: str) -> str:
    return f"recurring:{event_id}"


class RecurrentTaskDriver:
    """Runs one polling loop per recurring event ID.

    Each evaluation fires a one-off task only if the event has not run within
    its interval anywhere in the cluster (``<event>:lastrun`` in the shared
    store) and no record for it is currently queued or running.  The check
    and the later write are not atomic across nodes, so two nodes evaluating
    at the same instant can both fire; that duplicate is tolerated.

    Every evaluation ends by arming the next one *interval* seconds later,
    whatever the outcome, until the event is released from the registry.

    Args:
        scheduler: APScheduler instance the per-event timers live on.
        registry: Process-local record of active loops.
        timestamps: Shared store holding last-run times.
        query: Cluster-wide task search used for dedup.
        submitter: Creates the one-off record for each firing.
        enabled: Whether this node runs recurring tasks at all.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        registry: LocalTaskRegistry,
        timestamps: TimestampStore,
        query: TaskQueryService,
        submitter: TaskSubmitter,
        enabled: bool = True,
    ) -> None:
        self._scheduler = scheduler
        self._registry = registry
        self._timestamps = timestamps
        self._query = query
        self._submitter = submitter
        self.enabled = enabled

    # -- Loop management -------------------------------------------------------

    def start(
        self,
        event_id: str,
        context: dict[str, Any],
        interval: float,
        delay: float | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Start the loop for *event_id*. Returns False if nothing was started."""
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)
        if not self.enabled:
            logger.debug("Recurring tasks disabled on this node, not starting %s", event_id)
            return False
        if not self._registry.claim(event_id):
            logger.debug("Event %s already scheduled, skipping", event_id)
            return False

        self._arm(event_id, context, interval, timeout, delay or interval)
        logger.info("Started recurring task %s (every %ss)", event_id, interval)
        return True

    def stop(self, event_id: str) -> bool:
        """Stop re-arming *event_id*; an in-flight firing still completes."""
        released = self._registry.release(event_id)
        try:
            self._scheduler.remove_job(job_id(event_id))
        except JobLookupError:
            logger.debug("No pending timer for %s", event_id)
        return released

    def stop_all(self) -> None:
        for event_id in self._registry.events:
            self.stop(event_id)

    def _arm(
        self,
        event_id: str,
        context: dict[str, Any],
        interval: float,
        timeout: float | None,
        after: float,
    ) -> None:
        run_date = datetime.now(UTC) + timedelta(seconds=after)
        self._scheduler.add_job(
            self._tick,
            trigger=DateTrigger(run_date=run_date),
            id=job_id(event_id),
            name=event_id,
            args=[event_id, context, interval, timeout],
            misfire_grace_time=None,
            replace_existing=True,
        )

    async def _tick(
        self,
        event_id: str,
        context: dict[str, Any],
        interval: float,
        timeout: float | None,
    ) -> None:
        """Timer callback: evaluate once, then arm the next evaluation."""
        try:
            await self.evaluate(event_id, context, interval, timeout)
        except Exception:
            logger.exception("Recurring task %s evaluation failed", event_id)
        finally:
            if self._registry.is_active(event_id):
                self._arm(event_id, context, interval, timeout, interval)

    # -- Evaluation ------------------------------------------------------------

    async def evaluate(
        self,
        event_id: str,
        context: dict[str, Any],
        interval: float,
        timeout: float | None = None,
    ) -> bool:
        """Fire *event_id* if it is due and not scheduled anywhere. Returns True if fired."""
        if not await self._due(event_id, interval):
            logger.debug("Skipping %s - ran less than %ss ago", event_id, interval)
            return False
        if await self._query.is_scheduled(event_id):
            logger.debug("Skipping schedule of %s - already scheduled", event_id)
            return False

        logger.info("Scheduling %s", event_id)
        try:
            await self._submitter.submit(event_id, context, exclusive=True, timeout=timeout)
            logger.info("Task %s done", event_id)
        except TaskFailedError as exc:
            logger.debug("Task %s failed: %s", event_id, exc.error)
        await self._timestamps.set(lastrun_key(event_id), repr(time.time()))
        return True

    async def _due(self, event_id: str, interval: float) -> bool:
        try:
            raw = await self._timestamps.get(lastrun_key(event_id))
        except Exception:
            logger.warning("Could not read last run of %s", event_id, exc_info=True)
            return True
        if raw is None:
            return True
        try:
            lastrun = float(raw)
        except ValueError:
            logger.debug("Ignoring malformed last run %r for %s", raw, event_id)
            return True
        return time.time() - lastrun >= interval
