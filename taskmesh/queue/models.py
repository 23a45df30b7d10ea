"""TaskRecord data model and task result types."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

WORK_LANE = "work"
PUSH_LANE = "push"
LANES = (WORK_LANE, PUSH_LANE)


class TaskState(StrEnum):
    DELAYED = "delayed"
    INACTIVE = "inactive"
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETE, TaskState.FAILED)


# -- Results -------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    """A handler's return value."""

    value: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {"result": self.value}


@dataclass(frozen=True)
class Failure:
    """An error reported by a handler."""

    error: Any

    def to_payload(self) -> dict[str, Any]:
        return {"err": self.error}


TaskResult = Success | Failure


def encode_result(result: TaskResult | None) -> str | None:
    if result is None:
        return None
    return json.dumps(result.to_payload())


def decode_result(raw: Any) -> TaskResult | None:
    """Decode a stored result payload.

    Accepts JSON text or an already-decoded object.  ``{"err": ...}`` is a
    failure, ``{"result": ...}`` a success; anything else is treated as a
    bare success value.
    """
    if raw is None:
        return None
    payload = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError:
            return Success(raw)
    if isinstance(payload, dict):
        if payload.get("err") is not None:
            return Failure(payload["err"])
        if "result" in payload:
            return Success(payload["result"])
    return Success(payload)


# -- Records -------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(UTC)


def timestamp(moment: datetime | None = None) -> str:
    """ISO 8601 UTC timestamp with fixed precision, so stored values sort lexically."""
    return (moment or _now()).isoformat(timespec="microseconds")


def _parse(ts: str) -> datetime:
    parsed = datetime.fromisoformat(ts)
    # Attach UTC if naive
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class TaskRecord:
    """A unit of scheduled work persisted in the queue.

    Attributes:
        id: Unique identifier (UUID hex).
        event_id: Logical task type; selects the handler and is the dedup key.
        lane: ``"work"`` or ``"push"``, fixed for the record's life.
        context: JSON payload handed to the handler.
        meta: Optional scheduling metadata (``delay``, ``exclusive``, ``timeout``).
        state: Current :class:`TaskState`, owned by the queue and its workers.
        result: Decoded handler outcome, once the record is terminal.
        run_at: ISO 8601 time at which a delayed record becomes eligible.
        created_at: ISO 8601 timestamp.
        updated_at: ISO 8601 timestamp of the last state transition.
    """

    id: str
    event_id: str
    lane: str
    context: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    state: TaskState = TaskState.INACTIVE
    result: TaskResult | None = None
    run_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = timestamp()
        if not self.updated_at:
            self.updated_at = self.created_at
        self.state = TaskState(self.state)

    # -- Age -------------------------------------------------------------------

    def age(self, now: datetime | None = None) -> float:
        """Seconds since the record was created."""
        return ((now or _now()) - _parse(self.created_at)).total_seconds()

    def idle_for(self, now: datetime | None = None) -> float:
        """Seconds since the record's last state transition."""
        return ((now or _now()) - _parse(self.updated_at)).total_seconds()

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``task_records`` column order."""
        return (
            self.id,
            self.event_id,
            self.lane,
            json.dumps(self.context),
            json.dumps(self.meta),
            self.state.value,
            encode_result(self.result),
            self.run_at,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskRecord:
        """Deserialize from a ``task_records`` row tuple."""
        return cls(
            id=row[0],
            event_id=row[1],
            lane=row[2],
            context=json.loads(row[3]) if row[3] else {},
            meta=json.loads(row[4]) if row[4] else {},
            state=TaskState(row[5]),
            result=decode_result(row[6]),
            run_at=row[7],
            created_at=row[8],
            updated_at=row[9],
        )


def make_task_id() -> str:
    """Generate a new task ID."""
    return uuid.uuid4().hex


def lane_for(event_id: str, push_events: set[str] | frozenset[str]) -> str:
    """Route push-classified events to the push lane, everything else to work."""
    return PUSH_LANE if event_id in push_events else WORK_LANE
