"""Tests for Worker — claiming and executing records."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from helpers import wait_until

from taskmesh.queue import PUSH_LANE, WORK_LANE, Failure, LibsqlTaskQueue, Success, TaskState
from taskmesh.worker import Worker


async def _enqueue(queue: LibsqlTaskQueue, event_id: str, lane: str = WORK_LANE, **context):
    return await queue.save(queue.create(lane, event_id, context, {}))


async def _terminal(queue: LibsqlTaskQueue, task_id: str):
    async def _check():
        record = await queue.get(task_id)
        return record if record and record.state.is_terminal else None

    return await wait_until(_check)


async def test_executes_handler_and_stores_result(queue: LibsqlTaskQueue) -> None:
    handler = AsyncMock(return_value={"sent": 1})
    worker = Worker(queue, WORK_LANE, {"sendEmail": handler})
    record = await _enqueue(queue, "sendEmail", to="a@example.com")

    assert await worker.poll() == 1
    finished = await _terminal(queue, record.id)

    handler.assert_awaited_once_with({"to": "a@example.com"})
    assert finished.state is TaskState.COMPLETE
    assert finished.result == Success({"sent": 1})


async def test_handler_error_stored_as_failure(queue: LibsqlTaskQueue) -> None:
    handler = AsyncMock(side_effect=RuntimeError("smtp down"))
    worker = Worker(queue, WORK_LANE, {"sendEmail": handler})
    record = await _enqueue(queue, "sendEmail")

    await worker.poll()
    finished = await _terminal(queue, record.id)

    assert finished.state is TaskState.FAILED
    assert finished.result == Failure("smtp down")


async def test_unknown_event_fails(queue: LibsqlTaskQueue) -> None:
    worker = Worker(queue, WORK_LANE, {})
    record = await _enqueue(queue, "mystery")

    await worker.poll()
    finished = await _terminal(queue, record.id)

    assert finished.state is TaskState.FAILED
    assert finished.result == Failure("No handler for event mystery")


async def test_unserializable_result_fails(queue: LibsqlTaskQueue) -> None:
    worker = Worker(queue, WORK_LANE, {"sendEmail": AsyncMock(return_value=object())})
    record = await _enqueue(queue, "sendEmail")

    await worker.poll()
    finished = await _terminal(queue, record.id)
    assert finished.state is TaskState.FAILED


async def test_store_error_on_complete_fails_record(
    queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    worker = Worker(queue, WORK_LANE, {"sendEmail": AsyncMock(return_value="sent")})
    record = await _enqueue(queue, "sendEmail")
    monkeypatch.setattr(queue, "complete", AsyncMock(side_effect=OSError("disk full")))

    await worker.poll()
    finished = await _terminal(queue, record.id)

    assert finished.state is TaskState.FAILED
    assert finished.result == Failure("result could not be stored")


async def test_store_errors_do_not_escape(
    queue: LibsqlTaskQueue, monkeypatch: pytest.MonkeyPatch
) -> None:
    worker = Worker(queue, WORK_LANE, {"sendEmail": AsyncMock(return_value="sent")})
    record = await _enqueue(queue, "sendEmail")
    claimed = await queue.claim(WORK_LANE)
    monkeypatch.setattr(queue, "complete", AsyncMock(side_effect=OSError("disk full")))
    monkeypatch.setattr(queue, "fail", AsyncMock(side_effect=OSError("disk full")))

    # Should not raise
    await worker.execute(claimed)

    queue.fail.assert_awaited_once_with(record.id, Failure("result could not be stored"))
    assert (await queue.get(record.id)).state is TaskState.ACTIVE


async def test_only_consumes_own_lane(queue: LibsqlTaskQueue) -> None:
    worker = Worker(queue, WORK_LANE, {"notify": AsyncMock()})
    await _enqueue(queue, "notify", lane=PUSH_LANE)
    assert await worker.poll() == 0


async def test_respects_concurrency(queue: LibsqlTaskQueue) -> None:
    release = asyncio.Event()

    async def _slow(context):
        await release.wait()

    worker = Worker(queue, WORK_LANE, {"slow": _slow}, concurrency=2)
    for _ in range(3):
        await _enqueue(queue, "slow")

    assert await worker.poll() == 2
    assert worker.busy == 2
    assert await worker.poll() == 0

    release.set()
    await wait_until(lambda: _idle(worker))
    assert await worker.poll() == 1
    await wait_until(lambda: _idle(worker))


async def _idle(worker: Worker) -> bool:
    return worker.busy == 0


async def test_stop_cancels_running(queue: LibsqlTaskQueue) -> None:
    started = asyncio.Event()

    async def _forever(context):
        started.set()
        await asyncio.Event().wait()

    worker = Worker(queue, WORK_LANE, {"forever": _forever})
    await _enqueue(queue, "forever")
    await worker.poll()
    await started.wait()

    await worker.stop()
    assert worker.busy == 0
