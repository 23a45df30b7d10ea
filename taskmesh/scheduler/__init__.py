"""Distributed task scheduling — submission, recurrence, search, and reaping."""

from taskmesh.scheduler.engine import Scheduler
from taskmesh.scheduler.query import TaskQueryService
from taskmesh.scheduler.reaper import REAPER_EVENT, Reaper
from taskmesh.scheduler.recurrence import RecurrentTaskDriver
from taskmesh.scheduler.registry import LocalTaskRegistry
from taskmesh.scheduler.submitter import TaskFailedError, TaskSubmitter

__all__ = [
    "REAPER_EVENT",
    "LocalTaskRegistry",
    "Reaper",
    "RecurrentTaskDriver",
    "Scheduler",
    "TaskFailedError",
    "TaskQueryService",
    "TaskSubmitter",
]
