"""
Tests for the command correlator.

Covers the immediate, control and macro paths against a scripted transport.
"""

import asyncio

import pytest

from conftest import ACK, BUSY, NAK, ScriptedTransport, data_reply
from flexicart.constants import (
    Command,
    OperationStatus,
    OperationType,
    ResponseKind,
    SenseControl,
)
from flexicart.correlator import Correlator
from flexicart.events import EventPublisher, EventType
from flexicart.exceptions import (
    CommandRejectedError,
    OpenFailedError,
    ResponseTimeoutError,
    UnexpectedResponseError,
)
from flexicart.inventory import CassetteRecord, Inventory
from flexicart.operations import OperationTracker
from flexicart.parsers import ErrorReport
from flexicart.status import SystemStatus
from flexicart.transport import CommandChannel


STATUS_IDLE = data_reply(0x01, 0x00, 0x05, 0x07)
STATUS_MOVING = data_reply(0x01, 0x01, 0x04, 0x07)


def make_correlator(transport, polling=None, capacity=30):
    queue = asyncio.Queue()
    correlator = Correlator(
        CommandChannel(transport),
        SystemStatus(capacity=capacity),
        Inventory(capacity),
        OperationTracker(),
        publisher=EventPublisher(queue),
        polling=polling,
    )
    return correlator, queue


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestTransact:
    """Tests for communication bookkeeping."""

    @pytest.mark.asyncio
    async def test_success_updates_communication(self):
        transport = ScriptedTransport([ACK])
        correlator, queue = make_correlator(transport)

        response = await correlator.transact(correlator.frame(Command.DUMMY))

        comm = correlator.status.communication
        assert response.kind is ResponseKind.ACK
        assert comm.connected is True
        assert comm.error_count == 0
        assert comm.last_response_time is not None
        assert [e["type"] for e in drain(queue)] == [EventType.STATUS_UPDATE]

    @pytest.mark.asyncio
    async def test_busy_reply_sets_busy_flag(self):
        transport = ScriptedTransport([BUSY])
        correlator, _ = make_correlator(transport)

        await correlator.transact(correlator.frame(Command.DUMMY))

        assert correlator.status.communication.busy is True

    @pytest.mark.asyncio
    async def test_transport_error_counts(self):
        transport = ScriptedTransport([ResponseTimeoutError("none"), ResponseTimeoutError("none"), ACK])
        correlator, queue = make_correlator(transport)
        frame = correlator.frame(Command.DUMMY)

        for _ in range(2):
            with pytest.raises(ResponseTimeoutError):
                await correlator.transact(frame)
        assert correlator.status.communication.error_count == 2
        assert correlator.status.errors.last_error["error"] == "ResponseTimeoutError"
        assert len(drain(queue)) == 2

        await correlator.transact(frame)
        assert correlator.status.communication.error_count == 0

    @pytest.mark.asyncio
    async def test_open_failure_marks_disconnected(self):
        transport = ScriptedTransport([ACK, OpenFailedError("gone")])
        correlator, _ = make_correlator(transport)
        frame = correlator.frame(Command.DUMMY)

        await correlator.transact(frame)
        with pytest.raises(OpenFailedError):
            await correlator.transact(frame)

        assert correlator.status.communication.connected is False

    @pytest.mark.asyncio
    async def test_frames_use_profile_unit(self):
        transport = ScriptedTransport([ACK])
        correlator, _ = make_correlator(transport)

        await correlator.transact(correlator.frame(Command.DUMMY))

        assert transport.frames[0] == correlator.frame(Command.DUMMY)
        assert transport.frames[0][3] == correlator.profile.unit


class TestImmediatePath:
    """Tests for immediate commands."""

    @pytest.mark.asyncio
    async def test_status_query_merges(self):
        transport = ScriptedTransport([data_reply(0x01, 0x02, 0x05, 0x09)])
        correlator, _ = make_correlator(transport)

        sections = await correlator.query(Command.SENSE_REQUEST, SenseControl.STATUS)

        status = correlator.status
        assert sections["hardware"]["initialized"] is True
        assert status.hardware.power_on is True
        assert status.hardware.initialized is True
        assert status.movement.carousel_moving is True
        assert status.movement.elevator_position == 5
        assert status.movement.carousel_position == 9
        assert transport.frames[0][6] == SenseControl.STATUS

    @pytest.mark.asyncio
    async def test_position_query(self):
        transport = ScriptedTransport([data_reply(0x00, 0x03, 0x0C, 0x02)])
        correlator, _ = make_correlator(transport)

        await correlator.query(Command.SENSE_REQUEST, SenseControl.POSITION)

        movement = correlator.status.movement
        assert movement.elevator_position == 3
        assert movement.current_bin == 12
        assert movement.carousel_position == 2

    @pytest.mark.asyncio
    async def test_inventory_query_reconciles(self):
        transport = ScriptedTransport([data_reply(0b00000101, 0x00, 0x03)])
        correlator, queue = make_correlator(transport, capacity=16)
        correlator.inventory.set(9, CassetteRecord(id="OLD"))

        occupancy = await correlator.query(Command.SENSE_REQUEST, SenseControl.INVENTORY)

        assert occupancy[1] is True and occupancy[3] is True
        assert correlator.inventory.occupied_bins() == [1, 3]
        types = [e["type"] for e in drain(queue)]
        assert EventType.INVENTORY_UPDATE in types

    @pytest.mark.asyncio
    async def test_error_query(self):
        transport = ScriptedTransport([data_reply(0x01, 0x00)])
        correlator, _ = make_correlator(transport)

        report = await correlator.query(Command.SENSE_REQUEST, SenseControl.ERROR)

        assert report == ErrorReport(code=0x01, name="MECHANICAL_JAM")
        assert correlator.status.errors.active is True
        assert correlator.status.errors.last_error["name"] == "MECHANICAL_JAM"

    @pytest.mark.asyncio
    async def test_unparsed_command_returns_payload(self):
        transport = ScriptedTransport([data_reply(0x11, 0x22)])
        correlator, _ = make_correlator(transport)

        assert await correlator.query(Command.SYSTEM_MODE) == bytes([0x11, 0x22])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply,error", [
        (ACK, UnexpectedResponseError),
        (BUSY, UnexpectedResponseError),
        (NAK, CommandRejectedError),
    ])
    async def test_non_data_reply(self, reply, error):
        transport = ScriptedTransport([reply])
        correlator, _ = make_correlator(transport)

        with pytest.raises(error):
            await correlator.query(Command.SENSE_REQUEST, SenseControl.STATUS)


class TestControlPath:
    """Tests for control commands."""

    @pytest.mark.asyncio
    async def test_tally_ack(self):
        transport = ScriptedTransport([ACK, ACK])
        correlator, _ = make_correlator(transport)

        await correlator.control(Command.ON_AIR_TALLY, 0x01)
        assert correlator.status.on_air.tally_on is True

        await correlator.control(Command.ON_AIR_TALLY, 0x00)
        assert correlator.status.on_air.tally_on is False

    @pytest.mark.asyncio
    async def test_nak_is_rejection(self):
        transport = ScriptedTransport([NAK])
        correlator, _ = make_correlator(transport)

        with pytest.raises(CommandRejectedError):
            await correlator.control(Command.ON_AIR_TALLY, 0x01)
        assert correlator.status.on_air.tally_on is False

    @pytest.mark.asyncio
    async def test_data_is_unexpected(self):
        transport = ScriptedTransport([data_reply(0x01)])
        correlator, _ = make_correlator(transport)

        with pytest.raises(UnexpectedResponseError):
            await correlator.control(Command.DUMMY)

    @pytest.mark.asyncio
    async def test_control_never_creates_operation(self):
        transport = ScriptedTransport([ACK])
        correlator, _ = make_correlator(transport)

        result = await correlator.execute(Command.ON_AIR_TALLY, 0x01)

        assert result.success is True
        assert result.operation_id is None
        assert correlator.tracker.all() == []


class TestMacroPath:
    """Tests for macro commands and completion polling."""

    @pytest.mark.asyncio
    async def test_completes_after_stable_polls(self, fast_polling):
        transport = ScriptedTransport([ACK, STATUS_IDLE, STATUS_IDLE, STATUS_IDLE])
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.ELEVATOR_MOVE, 0x01)
        result = await handle.result()

        operation = correlator.tracker.get(handle.operation_id)
        assert result.success is True
        assert result.operation_id == handle.operation_id
        assert operation.status is OperationStatus.COMPLETED
        assert operation.type is OperationType.ELEVATOR_MOVE
        assert operation.duration > 0
        assert len(operation.steps) == 3
        assert operation.steps[-1].progress == 100
        assert transport.commands == [0x41, 0x61, 0x61, 0x61]

    @pytest.mark.asyncio
    async def test_changing_status_resets_streak(self, fast_polling):
        transport = ScriptedTransport([
            ACK,
            STATUS_MOVING, STATUS_MOVING,
            STATUS_IDLE, STATUS_IDLE, STATUS_IDLE,
        ])
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.CAROUSEL_ROTATE, 0x01)
        await handle.result()

        operation = handle.operation
        assert operation.status is OperationStatus.COMPLETED
        assert len(operation.steps) == 5
        assert correlator.status.movement.elevator_moving is False

    @pytest.mark.asyncio
    async def test_non_data_poll_resets_streak(self, fast_polling):
        transport = ScriptedTransport([
            ACK,
            STATUS_IDLE, STATUS_IDLE, BUSY,
            STATUS_IDLE, STATUS_IDLE, STATUS_IDLE,
        ])
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.INITIALIZE)
        await handle.result()

        assert handle.operation.status is OperationStatus.COMPLETED
        assert len(handle.operation.steps) == 6

    @pytest.mark.asyncio
    async def test_nak_creates_no_operation(self, fast_polling):
        transport = ScriptedTransport([NAK])
        correlator, _ = make_correlator(transport, fast_polling)

        result = await correlator.execute(Command.EJECT)

        assert result.success is False
        assert result.operation_id is None
        assert correlator.tracker.all() == []
        assert transport.commands == [0x45]

    @pytest.mark.asyncio
    async def test_busy_is_rejection(self, fast_polling):
        transport = ScriptedTransport([BUSY])
        correlator, _ = make_correlator(transport, fast_polling)

        with pytest.raises(CommandRejectedError):
            await correlator.submit(Command.CALIBRATE)
        assert correlator.tracker.all() == []

    @pytest.mark.asyncio
    async def test_times_out_after_max_polls(self, fast_polling):
        replies = [ACK] + [data_reply(0x01, 0x01, n) for n in range(fast_polling.max_polls)]
        transport = ScriptedTransport(replies)
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.MOVE_TO_POSITION, 0x0C)
        result = await handle.result()

        operation = handle.operation
        assert result.success is False
        assert result.error == "OperationTimeoutError"
        assert operation.status is OperationStatus.TIMEOUT
        assert len(operation.steps) == fast_polling.max_polls
        assert len(transport.frames) == 1 + fast_polling.max_polls

    @pytest.mark.asyncio
    async def test_transport_failure_fails_operation(self, fast_polling):
        transport = ScriptedTransport([ACK, STATUS_IDLE, OpenFailedError("unplugged")])
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.LOAD_UNLOAD, 0x01)
        result = await handle.result()

        operation = handle.operation
        assert result.success is False
        assert result.error == "OpenFailedError"
        assert operation.status is OperationStatus.FAILED
        assert operation.type is OperationType.LOAD
        assert operation.error == "unplugged"
        assert operation.result["error_code"] == "OpenFailedError"

    @pytest.mark.asyncio
    async def test_cancel_stops_polling(self, fast_polling):
        transport = ScriptedTransport([ACK], default=BUSY)
        correlator, _ = make_correlator(transport, fast_polling)

        handle = await correlator.submit(Command.ELEVATOR_MOVE, 0x02)
        await asyncio.sleep(0.025)
        assert handle.cancel() is True
        result = await handle.result()

        sent = len(transport.frames)
        await asyncio.sleep(0.05)
        assert len(transport.frames) == sent
        assert handle.done() is True
        assert result.success is False
        assert result.error == "OperationCancelledError"
        assert handle.operation.status is OperationStatus.CANCELLED
        assert correlator.handle(handle.operation_id) is None

    @pytest.mark.asyncio
    async def test_execute_without_wait(self, fast_polling):
        transport = ScriptedTransport([ACK, STATUS_IDLE, STATUS_IDLE, STATUS_IDLE])
        correlator, _ = make_correlator(transport, fast_polling)

        result = await correlator.execute(Command.CALIBRATE, wait=False)

        assert result.success is True
        assert result.data["status"] == "in_progress"
        handle = correlator.handle(result.operation_id)
        assert handle is not None
        final = await handle.result()
        assert final.data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_operation_complete_notified_once(self, fast_polling):
        transport = ScriptedTransport([ACK, STATUS_IDLE, STATUS_IDLE, STATUS_IDLE])
        correlator, _ = make_correlator(transport, fast_polling)
        finished = []
        correlator.tracker.add_listener(finished.append)

        handle = await correlator.submit(Command.EJECT)
        await handle.result()
        await handle.result()

        assert finished == [handle.operation_id]

    @pytest.mark.asyncio
    async def test_cancel_all(self, fast_polling):
        transport = ScriptedTransport([ACK, ACK], default=BUSY)
        correlator, _ = make_correlator(transport, fast_polling)

        first = await correlator.submit(Command.ELEVATOR_MOVE, 0x01)
        second = await correlator.submit(Command.CAROUSEL_ROTATE, 0x01)
        await correlator.cancel_all()

        assert first.operation.status is OperationStatus.CANCELLED
        assert second.operation.status is OperationStatus.CANCELLED
        assert correlator.tracker.active() == []


class TestExecute:
    """Tests for execute never raising driver errors."""

    @pytest.mark.asyncio
    async def test_transport_error_becomes_result(self):
        transport = ScriptedTransport([ResponseTimeoutError("no reply")])
        correlator, _ = make_correlator(transport)

        result = await correlator.execute(Command.SENSE_REQUEST, SenseControl.STATUS)

        assert result.success is False
        assert result.error == "ResponseTimeoutError"
        assert result.message == "no reply"

    @pytest.mark.asyncio
    async def test_inventory_result_data(self):
        transport = ScriptedTransport([data_reply(0b00000110)])
        correlator, _ = make_correlator(transport, capacity=8)

        result = await correlator.execute(Command.SENSE_REQUEST, SenseControl.INVENTORY)

        assert result.success is True
        assert result.data == {"occupied": [2, 3], "bins_reported": 8}

    @pytest.mark.asyncio
    async def test_invalid_field_becomes_result(self):
        transport = ScriptedTransport()
        correlator, _ = make_correlator(transport)

        result = await correlator.execute(Command.SET_BIN_LAMP, 0x1FF)

        assert result.success is False
        assert result.error == "InvalidFieldError"
        assert transport.frames == []
