"""
Tests for the operation tracker.
"""

import pytest

from flexicart.constants import EXPECTED_DURATIONS, OperationStatus, OperationType
from flexicart.exceptions import OperationNotFoundError, OperationStateError
from flexicart.operations import OperationTracker


@pytest.fixture
def tracker():
    return OperationTracker()


class TestOperationLifecycle:
    """Tests for starting and updating operations."""

    def test_start_creates_pending_operation(self, tracker):
        op_id = tracker.start(OperationType.EJECT, {"bin": 4})

        operation = tracker.get(op_id)
        assert op_id.startswith("op_1_")
        assert operation.status is OperationStatus.PENDING
        assert operation.params["bin"] == 4
        assert operation.params["expected_duration"] == EXPECTED_DURATIONS[OperationType.EJECT]
        assert operation.ended_at is None

    def test_ids_are_unique(self, tracker):
        ids = {tracker.start(OperationType.CALIBRATE) for _ in range(20)}
        assert len(ids) == 20
        assert len(tracker) == 20

    def test_terminal_update_sets_end(self, tracker):
        op_id = tracker.start(OperationType.LOAD)
        tracker.update(op_id, status=OperationStatus.IN_PROGRESS)
        operation = tracker.update(op_id, status="completed", result={"polls": 3})

        assert operation.status is OperationStatus.COMPLETED
        assert operation.result == {"polls": 3}
        assert operation.ended_at is not None
        assert operation.duration >= 0

    def test_terminal_operation_is_immutable(self, tracker):
        op_id = tracker.start(OperationType.UNLOAD)
        tracker.update(op_id, status=OperationStatus.FAILED, error="jam")

        with pytest.raises(OperationStateError):
            tracker.update(op_id, status=OperationStatus.COMPLETED)
        with pytest.raises(OperationStateError):
            tracker.add_step(op_id, "late")
        assert tracker.get(op_id).status is OperationStatus.FAILED

    def test_params_are_merged(self, tracker):
        op_id = tracker.start(OperationType.MOVE_TO_POSITION, {"target_bin": 7})
        tracker.update(op_id, params={"attempt": 2})

        params = tracker.get(op_id).params
        assert params["target_bin"] == 7
        assert params["attempt"] == 2

    def test_unknown_field_rejected(self, tracker):
        op_id = tracker.start(OperationType.EJECT)
        with pytest.raises(ValueError):
            tracker.update(op_id, id="other")

    def test_unknown_operation(self, tracker):
        with pytest.raises(OperationNotFoundError) as exc_info:
            tracker.get("op_missing")
        assert exc_info.value.operation_id == "op_missing"

    def test_steps_update_progress(self, tracker):
        op_id = tracker.start(OperationType.INITIALIZE)
        tracker.add_step(op_id, "homing", 30)
        tracker.add_step(op_id, "note")

        operation = tracker.get(op_id)
        assert [s.description for s in operation.steps] == ["homing", "note"]
        assert operation.progress == 30

    def test_to_dict(self, tracker):
        op_id = tracker.start(OperationType.ELEVATOR_MOVE)
        tracker.add_step(op_id, "poll 1: data", 33)

        data = tracker.get(op_id).to_dict()
        assert data["type"] == "elevator_move"
        assert data["status"] == "pending"
        assert data["steps"][0]["progress"] == 33


class TestTrackerQueries:
    """Tests for active listing, cleanup and listeners."""

    def test_active(self, tracker):
        running = tracker.start(OperationType.EJECT)
        done = tracker.start(OperationType.EJECT)
        tracker.update(done, status=OperationStatus.CANCELLED)

        assert [op.id for op in tracker.active()] == [running]
        assert len(tracker.all()) == 2

    def test_cleanup_removes_old_terminal(self, tracker):
        running = tracker.start(OperationType.EJECT)
        finished = tracker.start(OperationType.EJECT)
        tracker.update(finished, status=OperationStatus.TIMEOUT)
        tracker.get(finished)._ended_mono -= 120

        assert tracker.cleanup(max_age=60) == 1
        assert tracker.cleanup(max_age=60) == 0
        assert [op.id for op in tracker.all()] == [running]

    def test_cleanup_keeps_recent(self, tracker):
        op_id = tracker.start(OperationType.EJECT)
        tracker.update(op_id, status=OperationStatus.COMPLETED)
        assert tracker.cleanup(max_age=60) == 0

    def test_listener_called_once_per_terminal(self, tracker):
        finished = []
        tracker.add_listener(finished.append)
        op_id = tracker.start(OperationType.CALIBRATE)

        tracker.update(op_id, status=OperationStatus.IN_PROGRESS)
        tracker.update(op_id, progress=50)
        tracker.update(op_id, status=OperationStatus.COMPLETED)

        assert finished == [op_id]

    def test_failing_listener_does_not_break_update(self, tracker):
        def broken(op_id):
            raise RuntimeError("boom")

        seen = []
        tracker.add_listener(broken)
        tracker.add_listener(seen.append)
        op_id = tracker.start(OperationType.CALIBRATE)

        tracker.update(op_id, status=OperationStatus.FAILED)
        assert seen == [op_id]

    def test_remove_listener(self, tracker):
        seen = []
        tracker.add_listener(seen.append)
        tracker.remove_listener(seen.append)
        op_id = tracker.start(OperationType.EJECT)
        tracker.update(op_id, status=OperationStatus.COMPLETED)
        assert seen == []
