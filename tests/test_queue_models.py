"""Tests for TaskRecord and result decoding."""

from datetime import UTC, datetime, timedelta

from taskmesh.queue.models import (
    PUSH_LANE,
    WORK_LANE,
    Failure,
    Success,
    TaskRecord,
    TaskState,
    decode_result,
    lane_for,
    make_task_id,
)


def _make_record(**kwargs) -> TaskRecord:
    defaults = {
        "id": "abc123",
        "event_id": "sendEmail",
        "lane": WORK_LANE,
        "context": {"to": "a@example.com"},
        "meta": {"timeout": 5.0},
    }
    defaults.update(kwargs)
    return TaskRecord(**defaults)


class TestDecodeResult:
    def test_none(self):
        assert decode_result(None) is None

    def test_success_json(self):
        assert decode_result('{"result": 42}') == Success(42)

    def test_failure_json(self):
        assert decode_result('{"err": "boom"}') == Failure("boom")

    def test_already_decoded_object(self):
        assert decode_result({"err": {"code": 3}}) == Failure({"code": 3})

    def test_error_wins_over_result(self):
        assert decode_result({"result": 1, "err": "bad"}) == Failure("bad")

    def test_null_error_is_success(self):
        assert decode_result({"result": 1, "err": None}) == Success(1)

    def test_plain_text_is_success(self):
        assert decode_result("not json") == Success("not json")

    def test_object_without_keys_is_success(self):
        assert decode_result('{"count": 2}') == Success({"count": 2})


class TestTaskRecord:
    def test_defaults(self):
        record = _make_record()
        assert record.state is TaskState.INACTIVE
        assert record.created_at
        assert record.updated_at == record.created_at

    def test_row_round_trip_keeps_result(self):
        record = _make_record(state=TaskState.COMPLETE, result=Failure("nope"))
        restored = TaskRecord.from_row(record.to_row())
        assert restored == record

    def test_age_and_idle(self):
        now = datetime.now(UTC)
        record = _make_record(
            created_at=(now - timedelta(seconds=40)).isoformat(),
            updated_at=(now - timedelta(seconds=5)).isoformat(),
        )
        assert 39.9 < record.age(now) < 40.1
        assert 4.9 < record.idle_for(now) < 5.1

    def test_naive_timestamps_are_utc(self):
        now = datetime.now(UTC)
        record = _make_record(created_at=(now - timedelta(seconds=10)).replace(tzinfo=None).isoformat())
        assert 9.9 < record.age(now) < 10.1


def test_terminal_states():
    assert TaskState.COMPLETE.is_terminal
    assert TaskState.FAILED.is_terminal
    assert not TaskState.ACTIVE.is_terminal
    assert not TaskState.DELAYED.is_terminal


def test_lane_for():
    assert lane_for("notify", {"notify"}) == PUSH_LANE
    assert lane_for("sendEmail", {"notify"}) == WORK_LANE


def test_make_task_id_unique():
    assert make_task_id() != make_task_id()
    assert len(make_task_id()) == 32
