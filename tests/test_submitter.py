"""Tests for TaskSubmitter — outcomes, watchdog, routing."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from helpers import wait_until

from taskmesh.queue import PUSH_LANE, WORK_LANE, Failure, LibsqlTaskQueue, Success, TaskState
from taskmesh.scheduler.submitter import TaskFailedError, TaskSubmitter


@pytest.fixture
def submitter(queue: LibsqlTaskQueue) -> TaskSubmitter:
    return TaskSubmitter(queue, push_events={"notify"}, default_timeout=5.0)


async def _pending(queue: LibsqlTaskQueue, lane: str = WORK_LANE, state=TaskState.INACTIVE):
    async def _first():
        records = await queue.list_by_state(lane, state)
        return records[0] if records else None

    return await wait_until(_first)


# -- Outcomes ------------------------------------------------------------------


async def test_resolves_with_result(submitter: TaskSubmitter, queue: LibsqlTaskQueue) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail", {"to": "a@example.com"}))
    record = await _pending(queue)
    assert record.context == {"to": "a@example.com"}

    await queue.complete(record.id, Success({"message_id": 7}))
    assert await outcome == {"message_id": 7}


async def test_rejects_with_error(submitter: TaskSubmitter, queue: LibsqlTaskQueue) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)

    await queue.fail(record.id, Failure("smtp down"))
    with pytest.raises(TaskFailedError) as exc_info:
        await outcome
    assert exc_info.value.error == "smtp down"
    assert exc_info.value.event_id == "sendEmail"


async def test_error_payload_on_complete_record_rejects(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue
) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)

    await queue.complete(record.id, Failure({"code": 500}))
    with pytest.raises(TaskFailedError) as exc_info:
        await outcome
    assert exc_info.value.error == {"code": 500}


async def test_no_result_resolves_none(submitter: TaskSubmitter, queue: LibsqlTaskQueue) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)

    await queue.complete(record.id)
    assert await outcome is None


async def test_missing_record_resolves_none(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)

    monkeypatch.setattr(queue, "get", AsyncMock(return_value=None))
    await queue.complete(record.id, Success("ignored"))
    assert await outcome is None


async def test_read_error_resolves_none(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)

    monkeypatch.setattr(queue, "get", AsyncMock(side_effect=OSError("disk gone")))
    await queue.complete(record.id, Success("ignored"))
    assert await outcome is None


async def test_completion_on_another_node(db_path: Path, _no_turso) -> None:
    local = LibsqlTaskQueue(db_path=db_path)
    remote = LibsqlTaskQueue(db_path=db_path)
    submitter = TaskSubmitter(local, default_timeout=5.0)

    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(remote)
    await remote.complete(record.id, Success("from remote"))

    await local.tick()
    assert await outcome == "from remote"


# -- Watchdog ------------------------------------------------------------------


async def test_timeout_resolves_none_and_fails_record(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue
) -> None:
    loop = asyncio.get_running_loop()
    started = loop.time()

    result = await submitter.submit("sendEmail", timeout=0.1)

    elapsed = loop.time() - started
    assert result is None
    assert 0.1 <= elapsed < 0.6

    failed = await queue.list_by_state(WORK_LANE, TaskState.FAILED)
    assert [r.event_id for r in failed] == ["sendEmail"]
    assert failed[0].meta == {"timeout": 0.1}
    assert queue.subscribed == set()


async def test_timeout_survives_fail_error(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(queue, "fail", AsyncMock(side_effect=OSError("disk gone")))
    assert await submitter.submit("sendEmail", timeout=0.05) is None


async def test_late_completion_is_ignored(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue
) -> None:
    assert await submitter.submit("sendEmail", timeout=0.05) is None
    record = (await queue.list_by_state(WORK_LANE, TaskState.FAILED))[0]

    # Nobody is listening any more; completing must not raise.
    assert await queue.complete(record.id, Success("too late")) is True


async def test_save_error_propagates(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(queue, "save", AsyncMock(side_effect=OSError("disk gone")))
    with pytest.raises(OSError, match="disk gone"):
        await submitter.submit("sendEmail")
    assert queue.subscribed == set()


# -- Routing and metadata ------------------------------------------------------


async def test_push_event_routed_to_push_lane(
    submitter: TaskSubmitter, queue: LibsqlTaskQueue
) -> None:
    outcome = asyncio.create_task(submitter.submit("notify"))
    record = await _pending(queue, PUSH_LANE)
    assert record.lane == PUSH_LANE
    await queue.complete(record.id, Success(True))
    assert await outcome is True


async def test_delay_and_metadata(submitter: TaskSubmitter, queue: LibsqlTaskQueue) -> None:
    outcome = asyncio.create_task(
        submitter.submit("sendEmail", delay=30, exclusive=True, timeout=2.0)
    )
    record = await _pending(queue, state=TaskState.DELAYED)
    assert record.meta == {"delay": 30, "exclusive": True, "timeout": 2.0}
    assert record.run_at is not None

    await queue.complete(record.id, Success("ok"))
    assert await outcome == "ok"


async def test_empty_metadata_omitted(submitter: TaskSubmitter, queue: LibsqlTaskQueue) -> None:
    outcome = asyncio.create_task(submitter.submit("sendEmail"))
    record = await _pending(queue)
    assert record.meta == {}
    await queue.complete(record.id)
    await outcome
