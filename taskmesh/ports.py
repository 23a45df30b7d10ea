"""Ports (interfaces) the scheduler core depends on.

The core talks to the task queue and the timestamp store through these
Protocols only.  ``taskmesh.queue`` ships libsql-backed implementations;
tests and other deployments can supply their own.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from taskmesh.queue.models import TaskRecord, TaskResult, TaskState

CompletionCallback = Callable[[str], None]
# Called with the task ID once the record reaches a terminal state.


class TaskQueue(Protocol):
    """Persistent, multi-consumer task queue."""

    def create(
        self,
        lane: str,
        event_id: str,
        context: dict[str, Any],
        meta: dict[str, Any],
    ) -> TaskRecord: ...

    async def save(self, record: TaskRecord, delay: float | None = None) -> TaskRecord: ...

    def subscribe(self, task_id: str, callback: CompletionCallback) -> None: ...

    def unsubscribe(self, task_id: str, callback: CompletionCallback) -> None: ...

    async def get(self, task_id: str) -> TaskRecord | None: ...

    async def list_by_state(
        self,
        lane: str | None,
        state: TaskState,
        offset: int = 0,
        limit: int = 1000,
        order: str = "asc",
    ) -> list[TaskRecord]: ...

    async def remove(self, task_id: str) -> bool: ...

    async def fail(self, task_id: str, result: TaskResult | None = None) -> bool: ...


class TimestampStore(Protocol):
    """Shared key-value store holding simple string values."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: float | None = None) -> None: ...

    async def expire(self, key: str, ttl: float) -> bool: ...
