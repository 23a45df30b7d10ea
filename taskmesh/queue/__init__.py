"""Persistent task queue and key-value store on libsql."""

from taskmesh.queue.kv import LibsqlTimestampStore
from taskmesh.queue.models import (
    PUSH_LANE,
    WORK_LANE,
    Failure,
    Success,
    TaskRecord,
    TaskResult,
    TaskState,
)
from taskmesh.queue.store import LibsqlTaskQueue

__all__ = [
    "PUSH_LANE",
    "WORK_LANE",
    "Failure",
    "LibsqlTaskQueue",
    "LibsqlTimestampStore",
    "Success",
    "TaskRecord",
    "TaskResult",
    "TaskState",
]
