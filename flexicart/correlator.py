"""
Command classifier and correlator.

Routes every command through the command channel and interprets the reply
according to the command's kind:

    IMMEDIATE  DATA reply, parsed and merged into status or inventory
    CONTROL    bare ACK (tally, lamp, dummy)
    MACRO      ACK, then completion polling with the status sense request

Macro completion is inferred from the status payload staying byte-identical
for a number of consecutive polls. The cart sends no completion message, so
this is an approximation.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from .codec import Response, decode_response, encode
from .constants import (
    COMMAND_KINDS,
    DEFAULT_DATA,
    Command,
    CommandKind,
    OperationStatus,
    ResponseKind,
    SenseControl,
    get_command_name,
    operation_type_for,
)
from .events import EventPublisher, EventType
from .exceptions import (
    CommandRejectedError,
    FlexicartError,
    OpenFailedError,
    OpenTimeoutError,
    OperationCancelledError,
    OperationError,
    OperationTimeoutError,
    ResponseTimeoutError,
    TransportError,
    UnexpectedResponseError,
)
from .inventory import Inventory
from .operations import Operation, OperationTracker
from .parsers import ErrorReport, parse_error, parse_inventory, parse_status, parser_for
from .results import CommandResult
from .settings import PollingSettings, ProtocolProfile
from .status import SystemStatus
from .transport import CommandChannel


logger = logging.getLogger(__name__)

STATUS_ERROR_CODES = {
    OperationStatus.TIMEOUT: OperationTimeoutError.__name__,
    OperationStatus.CANCELLED: OperationCancelledError.__name__,
}


def operation_error_code(operation: Operation) -> Optional[str]:
    """
    Error code of a terminal operation.

    A failed operation carries the code of the error that ended it.
    """
    if operation.status is OperationStatus.FAILED:
        if isinstance(operation.result, dict) and operation.result.get("error_code"):
            return operation.result["error_code"]
        return OperationError.__name__
    return STATUS_ERROR_CODES.get(operation.status)


def operation_result(operation: Operation) -> CommandResult:
    """Build the command result of a finished (or still running) operation."""
    name = operation.type.value
    if operation.status is OperationStatus.COMPLETED:
        return CommandResult.ok(
            f"{name} completed",
            data=operation.to_dict(),
            operation_id=operation.id,
        )
    if not operation.status.is_terminal:
        return CommandResult.ok(
            f"{name} started",
            data=operation.to_dict(),
            operation_id=operation.id,
        )
    return CommandResult(
        success=False,
        message=operation.error or f"{name} {operation.status.value}",
        operation_id=operation.id,
        error=operation_error_code(operation),
        data=operation.to_dict(),
    )


class MacroHandle:
    """
    Handle of a running macro operation.

    Attributes:
        operation_id: Id of the tracked operation.
    """

    def __init__(
        self,
        operation_id: str,
        task: "asyncio.Task[Operation]",
        correlator: "Correlator",
    ) -> None:
        self.operation_id = operation_id
        self._task = task
        self._correlator = correlator

    @property
    def operation(self) -> Operation:
        return self._correlator.tracker.get(self.operation_id)

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """
        Stop completion polling.

        Returns:
            True if polling was still running.
        """
        return self._task.cancel()

    async def result(self) -> CommandResult:
        """Wait for the operation to finish and return its result."""
        try:
            operation = await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
            self._correlator.mark_cancelled(self.operation_id)
            operation = self.operation
        return operation_result(operation)


class Correlator:
    """
    Sends commands and correlates replies with cart state.

    The only writer of SystemStatus.

    Attributes:
        status: Shared system status.
        inventory: Bin inventory.
        tracker: Operation tracker.
        profile: Protocol profile.
        polling: Macro polling settings.
    """

    def __init__(
        self,
        channel: CommandChannel,
        status: SystemStatus,
        inventory: Inventory,
        tracker: OperationTracker,
        publisher: Optional[EventPublisher] = None,
        profile: Optional[ProtocolProfile] = None,
        polling: Optional[PollingSettings] = None,
    ) -> None:
        self._channel = channel
        self.status = status
        self.inventory = inventory
        self.tracker = tracker
        self._publisher = publisher
        self.profile = profile or ProtocolProfile()
        self.polling = polling or PollingSettings()
        self._handles: dict[str, MacroHandle] = {}

    # =========================================================================
    # Framing and exchange
    # =========================================================================

    def frame(
        self,
        command: int,
        control: int = 0x00,
        block_type: int = 0x00,
        data: int = DEFAULT_DATA,
    ) -> bytes:
        """Encode a frame for the configured unit."""
        return encode(
            self.profile.unit,
            command,
            block_type=block_type,
            control=control,
            data=data,
            profile=self.profile,
        )

    async def _exchange(
        self,
        frame: bytes,
        timeout: Optional[float],
        silence_ok: bool = False,
    ) -> Response:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            raw = await self._channel.exchange(frame, timeout)
        except TransportError as e:
            if silence_ok and isinstance(e, ResponseTimeoutError):
                logger.debug(f"{get_command_name(frame[5])}: no reply")
                raise
            self._record_transport_error(e)
            raise

        response = decode_response(raw, self.profile)
        elapsed_ms = (loop.time() - started) * 1000
        self.status.merge_from_response("communication", {
            "connected": True,
            "last_response_time": response_timestamp(),
            "response_time_ms": round(elapsed_ms, 1),
            "error_count": 0,
            "busy": response.kind is ResponseKind.BUSY,
        })
        logger.debug(
            f"{get_command_name(frame[5])} -> {response.kind.value} "
            f"({len(raw)} bytes, {elapsed_ms:.0f} ms)"
        )
        return response

    def _record_transport_error(self, error: TransportError) -> None:
        update: dict[str, Any] = {
            "error_count": self.status.communication.error_count + 1,
            "busy": False,
        }
        if isinstance(error, (OpenFailedError, OpenTimeoutError)):
            update["connected"] = False
        self.status.merge_from_response("communication", update)
        self.status.merge_from_response("errors", {"last_error": error.to_dict()})
        logger.warning(f"Transport error: {error.message}")

    async def transact(
        self,
        frame: bytes,
        timeout: Optional[float] = None,
        silence_ok: bool = False,
    ) -> Response:
        """
        Perform one serialized exchange and publish the status.

        Args:
            frame: Encoded command frame.
            timeout: Response timeout, the channel default if None.
            silence_ok: A missing reply is an expected outcome and is not
                counted as a communication error.

        Raises:
            TransportError: On any transport failure.
        """
        try:
            return await self._exchange(frame, timeout, silence_ok)
        finally:
            await self.publish_status()

    async def publish_status(self) -> None:
        if self._publisher is not None:
            await self._publisher.publish(
                EventType.STATUS_UPDATE,
                status=self.status.to_dict(),
            )

    async def publish_inventory(self) -> None:
        if self._publisher is not None:
            await self._publisher.publish(
                EventType.INVENTORY_UPDATE,
                stats=self.inventory.stats().to_dict(),
                version=self.inventory.version,
            )

    def _unexpected(
        self,
        command: int,
        response: Response,
        expected: str,
        reject_busy: bool = False,
    ) -> UnexpectedResponseError:
        name = get_command_name(command)
        rejected = {ResponseKind.NAK, ResponseKind.BUSY} if reject_busy else {ResponseKind.NAK}
        if response.kind in rejected:
            return CommandRejectedError(
                f"{name} rejected ({response.kind.value.upper()})",
                response_kind=response.kind.value,
                raw=response.raw,
            )
        return UnexpectedResponseError(
            f"{name}: expected {expected}, got {response.kind.value}",
            response_kind=response.kind.value,
            raw=response.raw,
        )

    # =========================================================================
    # Immediate path
    # =========================================================================

    def _apply_status_payload(self, payload: bytes) -> dict[str, dict[str, Any]]:
        sections = parse_status(payload)
        self.status.merge(sections)
        return sections

    async def query(
        self,
        command: int,
        control: int = 0x00,
        block_type: int = 0x00,
        data: int = DEFAULT_DATA,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send an immediate command and apply its parsed payload.

        Returns:
            Parsed payload: status sections, occupancy mapping, ErrorReport,
            or the raw payload bytes for commands without a parser.

        Raises:
            TransportError: On transport failure.
            UnexpectedResponseError: If the reply is not DATA.
        """
        try:
            response = await self._exchange(
                self.frame(command, control, block_type, data),
                timeout,
            )
            if response.kind is not ResponseKind.DATA:
                raise self._unexpected(command, response, "data")

            payload = response.payload
            parser = parser_for(command, control)
            if parser is None:
                return payload
            if parser is parse_inventory:
                occupancy = parse_inventory(payload, self.inventory.capacity)
                if self.inventory.apply_occupancy(occupancy):
                    await self.publish_inventory()
                return occupancy
            if parser is parse_error:
                report = parse_error(payload)
                self.status.record_error(report.code, report.name)
                return report
            sections = parser(payload)
            self.status.merge(sections)
            return sections
        finally:
            await self.publish_status()

    # =========================================================================
    # Control path
    # =========================================================================

    async def control(
        self,
        command: int,
        control: int = 0x00,
        block_type: int = 0x00,
        data: int = DEFAULT_DATA,
        timeout: Optional[float] = None,
    ) -> Response:
        """
        Send a control command that must be acknowledged.

        Raises:
            TransportError: On transport failure.
            CommandRejectedError: If the cart answered NAK.
            UnexpectedResponseError: If the reply is anything but ACK.
        """
        try:
            response = await self._exchange(
                self.frame(command, control, block_type, data),
                timeout,
            )
            if not response.is_ack:
                raise self._unexpected(command, response, "ack")
            if command == Command.ON_AIR_TALLY:
                self.status.merge_from_response("on_air", {"tally_on": control == 0x01})
            return response
        finally:
            await self.publish_status()

    # =========================================================================
    # Macro path
    # =========================================================================

    async def submit(
        self,
        command: int,
        control: int = 0x00,
        block_type: int = 0x00,
        data: int = DEFAULT_DATA,
        params: Optional[dict[str, Any]] = None,
    ) -> MacroHandle:
        """
        Start a macro command and its completion polling.

        No operation is created unless the cart acknowledges the command.

        Raises:
            TransportError: On transport failure.
            CommandRejectedError: If the cart answered NAK or BUSY.
            UnexpectedResponseError: If the reply is anything else but ACK.
        """
        op_type = operation_type_for(command, control)
        response = await self.transact(self.frame(command, control, block_type, data))
        if not response.is_ack:
            raise self._unexpected(command, response, "ack", reject_busy=True)

        op_params = {"command": get_command_name(command), "control": control}
        op_params.update(params or {})
        op_id = self.tracker.start(op_type, op_params)
        self.tracker.update(op_id, status=OperationStatus.IN_PROGRESS)

        task = asyncio.create_task(self._poll_until_stable(op_id))
        task.add_done_callback(partial(self._on_poll_done, op_id))
        handle = MacroHandle(op_id, task, self)
        self._handles[op_id] = handle
        logger.info(f"{op_type.value} acknowledged, tracking as {op_id}")
        return handle

    async def _poll_until_stable(self, op_id: str) -> Operation:
        polling = self.polling
        status_frame = self.frame(Command.SENSE_REQUEST, SenseControl.STATUS)
        previous: Optional[bytes] = None
        streak = 0

        for poll in range(1, polling.max_polls + 1):
            await asyncio.sleep(polling.poll_interval)
            try:
                response = await self._exchange(status_frame, None)
            except TransportError as e:
                await self.publish_status()
                return self.tracker.update(
                    op_id,
                    status=OperationStatus.FAILED,
                    error=e.message,
                    result={"error_code": e.code, "polls": poll},
                )

            if response.kind is ResponseKind.DATA:
                payload = response.payload
                self._apply_status_payload(payload)
                streak = streak + 1 if payload == previous else 1
                previous = payload
            else:
                streak = 0
                previous = None
            await self.publish_status()

            progress = min(100, streak * 100 // polling.stable_polls)
            self.tracker.add_step(op_id, f"poll {poll}: {response.kind.value}", progress)

            if streak >= polling.stable_polls:
                return self.tracker.update(
                    op_id,
                    status=OperationStatus.COMPLETED,
                    progress=100,
                    result={"polls": poll, "status": previous.hex(" ") if previous else ""},
                )

        error = OperationTimeoutError(
            f"No stable status after {polling.max_polls} polls",
            operation_id=op_id,
        )
        return self.tracker.update(op_id, status=OperationStatus.TIMEOUT, error=error.message)

    def mark_cancelled(self, op_id: str) -> None:
        """Move a still-active operation to the cancelled state."""
        operation = self.tracker.get(op_id)
        if operation.is_active:
            error = OperationCancelledError("Cancelled by caller", operation_id=op_id)
            self.tracker.update(op_id, status=OperationStatus.CANCELLED, error=error.message)

    def _on_poll_done(self, op_id: str, task: "asyncio.Task[Operation]") -> None:
        self._handles.pop(op_id, None)
        if task.cancelled():
            self.mark_cancelled(op_id)
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Polling for {op_id} crashed: {error!r}")
            operation = self.tracker.get(op_id)
            if operation.is_active:
                self.tracker.update(
                    op_id,
                    status=OperationStatus.FAILED,
                    error=str(error),
                    result={"error_code": type(error).__name__},
                )

    def handle(self, op_id: str) -> Optional[MacroHandle]:
        """Get the handle of a running operation."""
        return self._handles.get(op_id)

    def cancel(self, op_id: str) -> bool:
        """Cancel polling of a running operation."""
        handle = self._handles.get(op_id)
        return handle.cancel() if handle else False

    async def cancel_all(self) -> None:
        """Cancel every running operation and wait for polling to stop."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.result()

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def execute(
        self,
        command: int,
        control: int = 0x00,
        block_type: int = 0x00,
        data: int = DEFAULT_DATA,
        *,
        wait: bool = True,
        timeout: Optional[float] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> CommandResult:
        """
        Execute any command and report the outcome as a CommandResult.

        Driver errors never propagate out of this method.
        """
        name = get_command_name(command)
        kind = COMMAND_KINDS.get(command, CommandKind.IMMEDIATE)
        try:
            if kind is CommandKind.MACRO:
                handle = await self.submit(command, control, block_type, data, params)
                if not wait:
                    return operation_result(handle.operation)
                return await handle.result()

            if kind is CommandKind.CONTROL:
                await self.control(command, control, block_type, data, timeout)
                return CommandResult.ok(f"{name} acknowledged")

            parsed = await self.query(command, control, block_type, data, timeout)
            return CommandResult.ok(f"{name} ok", data=result_data(parsed))
        except CommandRejectedError as e:
            logger.warning(f"{name} rejected: {e.message}")
            return CommandResult.rejected(e.message)
        except FlexicartError as e:
            logger.error(f"{name} failed: {e.message}")
            return CommandResult.failed(e)


def response_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def result_data(parsed: Any) -> Any:
    """Convert a parsed payload into plain data for a CommandResult."""
    if isinstance(parsed, ErrorReport):
        return parsed.to_dict()
    if isinstance(parsed, (bytes, bytearray)):
        return {"payload": bytes(parsed).hex(" ")}
    if parsed and isinstance(parsed, dict) and all(isinstance(k, int) for k in parsed):
        return {
            "occupied": [p for p, flag in sorted(parsed.items()) if flag],
            "bins_reported": len(parsed),
        }
    return parsed
