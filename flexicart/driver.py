"""
FlexiCart Driver (Application Layer).

High-level async driver for FlexiCart robotic cassette carts.

This is the main entry point for application code.

Example:
    import asyncio
    from flexicart import FlexicartDriver, Settings, ChannelSettings

    async def on_operation(event):
        print(f"Operation finished: {event['operation_id']}")

    async def main():
        driver = FlexicartDriver(Settings(channel=ChannelSettings(port="/dev/ttyUSB0")))
        driver.add_handler("operationComplete", on_operation)

        await driver.connect()
        await driver.move_to_position(12)
        result = await driver.scan_bin(12)
        print(result.barcode)
        await driver.disconnect()

    asyncio.run(main())
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from .barcode import BarcodeScanner
from .codec import split_position
from .constants import (
    CarouselDirection,
    CassetteAction,
    Command,
    ElevatorDirection,
    SenseControl,
)
from .correlator import Correlator, operation_result
from .events import EventConsumer, EventPublisher, EventType
from .exceptions import (
    CartConnectionError,
    DataError,
    FlexicartError,
    OpenFailedError,
    OpenTimeoutError,
    OperationStateError,
    OutOfRangeError,
    RepositoryError,
)
from .inventory import Inventory
from .operations import OperationTracker
from .repository import InventoryRepository
from .results import CommandResult, ScanResult
from .settings import Settings
from .status import SystemStatus
from .transport import CommandChannel, SerialSession, Transport


logger = logging.getLogger(__name__)


class FlexicartDriver:
    """
    Async driver for one FlexiCart.

    Features:
    - Per-exchange serial sessions serialized through one command channel
    - Macro operations tracked until their status stabilizes
    - Inventory kept in step with inventory payloads and barcode scans
    - Periodic status and inventory refresh
    - Events published through an asyncio queue
    - Optional automatic scanning of newly detected cassettes

    Attributes:
        settings: Driver settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[Transport] = None,
        repository: Optional[InventoryRepository] = None,
        refresh: bool = True,
    ) -> None:
        """
        Initialize the driver.

        Args:
            settings: Driver settings (defaults apply when omitted).
            transport: Transport to use instead of a serial session.
            repository: Optional inventory snapshot store.
            refresh: Run the periodic refresh loops while connected.
        """
        self.settings = settings or Settings()
        self._repository = repository
        self._refresh = refresh

        cart = self.settings.inventory
        self._status = SystemStatus(cart.cart_id, cart.capacity)
        self._inventory = Inventory(cart.capacity)
        self._tracker = OperationTracker()

        self._event_queue: asyncio.Queue = asyncio.Queue()
        self._publisher = EventPublisher(self._event_queue)
        self._consumer = EventConsumer(self._event_queue)

        self._channel = CommandChannel(transport or SerialSession(self.settings.channel))
        self._correlator = Correlator(
            self._channel,
            self._status,
            self._inventory,
            self._tracker,
            publisher=self._publisher,
            profile=self.settings.protocol,
            polling=self.settings.polling,
        )
        self._scanner = BarcodeScanner(self._correlator, self.settings.scan)
        self._tracker.add_listener(self._on_operation_complete)

        self._connected = False
        self._auto_scan = False
        self._tasks: list[asyncio.Task] = []
        if self.settings.scan.auto_scan:
            self.enable_auto_scan()

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def system_status(self) -> SystemStatus:
        return self._status

    @property
    def inventory(self) -> Inventory:
        return self._inventory

    @property
    def operations(self) -> OperationTracker:
        return self._tracker

    @property
    def scanner(self) -> BarcodeScanner:
        return self._scanner

    def active_operations(self) -> list[dict[str, Any]]:
        return [op.to_dict() for op in self._tracker.active()]

    def get_operation(self, operation_id: str) -> dict[str, Any]:
        """
        Get one operation as a dictionary.

        Raises:
            OperationNotFoundError: If no such operation exists.
        """
        return self._tracker.get(operation_id).to_dict()

    def get_state(self) -> dict[str, Any]:
        """Snapshot of status, operations and inventory statistics."""
        return {
            "system": self._status.to_dict(),
            "operations": {
                "active": self.active_operations(),
                "total": len(self._tracker),
            },
            "inventory": self._inventory.stats().to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # =========================================================================
    # Events
    # =========================================================================

    def add_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable[[dict[str, Any]], Any],
    ) -> None:
        """
        Register a handler for an event type.

        Event types (from EventType):
        - statusUpdate: system status changed
        - inventoryUpdate: inventory changed
        - operationComplete: a macro operation reached a terminal state

        Args:
            event_type: Event type.
            handler: Sync or async callable receiving the event dictionary.
        """
        self._consumer.register_handler(event_type, handler)

    def remove_handler(
        self,
        event_type: Union[EventType, str],
        handler: Callable[[dict[str, Any]], Any],
    ) -> None:
        self._consumer.unregister_handler(event_type, handler)

    def _on_operation_complete(self, operation_id: str) -> None:
        operation = self._tracker.get(operation_id)
        self._publisher.publish_nowait(
            EventType.OPERATION_COMPLETE,
            operation_id=operation_id,
            operation=operation.to_dict(),
        )

    async def _save_inventory(self, event: dict[str, Any]) -> None:
        try:
            await self._repository.save_snapshot(self._inventory.export())
        except RepositoryError as e:
            logger.warning(f"Could not save inventory: {e.message}")

    async def flush_events(self) -> None:
        """Dispatch all queued events to their handlers."""
        await self._consumer.drain()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> bool:
        """
        Connect to the cart.

        Restores the stored inventory, queries the status and starts the
        refresh loops. Only a failure to open the port is fatal.

        Returns:
            True once connected.

        Raises:
            CartConnectionError: If the serial port cannot be opened.
        """
        if self._connected:
            logger.warning("Already connected")
            return True

        channel = self.settings.channel
        logger.info(
            f"Connecting to {self.settings.inventory.cart_id} on {channel.port} "
            f"at {channel.baudrate} baud"
        )
        await self._consumer.start_consuming()

        if self._repository is not None:
            await self._restore_inventory()
            self._consumer.register_handler(EventType.INVENTORY_UPDATE, self._save_inventory)

        try:
            await self._correlator.query(Command.SENSE_REQUEST, SenseControl.STATUS)
        except (OpenFailedError, OpenTimeoutError) as e:
            logger.error(f"Connection failed: {e.message}")
            await self._cleanup()
            raise CartConnectionError(
                f"Cannot open {channel.port}: {e.message}",
                details=e.details,
            )
        except FlexicartError as e:
            logger.warning(f"Initial status query failed: {e.message}")

        self._connected = True
        if self._refresh:
            self._start_background_tasks()

        logger.info(f"Connected, state: {self._status.operational_state().value}")
        return True

    async def disconnect(self) -> None:
        """Stop background work, cancel running operations and close down."""
        if not self._connected:
            return

        logger.info("Disconnecting...")
        self._connected = False
        await self._stop_background_tasks()
        await self._correlator.cancel_all()
        await self._consumer.drain()
        await self._cleanup()
        logger.info("Disconnected")

    async def _cleanup(self) -> None:
        await self._consumer.stop_consuming()
        if self._repository is not None:
            self._consumer.unregister_handler(EventType.INVENTORY_UPDATE, self._save_inventory)

    async def _restore_inventory(self) -> None:
        try:
            snapshot = await self._repository.load_snapshot()
            if snapshot:
                count = self._inventory.import_snapshot(snapshot)
                logger.info(f"Restored {count} inventory records")
        except (RepositoryError, DataError) as e:
            logger.warning(f"Could not restore inventory: {e.message}")

    def _start_background_tasks(self) -> None:
        polling = self.settings.polling
        loops = (
            ("status refresh", polling.status_refresh_interval, self.query_status),
            ("inventory refresh", polling.inventory_refresh_interval, self.query_inventory),
            ("operation cleanup", polling.cleanup_interval, self._cleanup_operations),
        )
        for name, interval, action in loops:
            if interval and interval > 0:
                self._tasks.append(asyncio.create_task(self._periodic(name, interval, action)))

    async def _stop_background_tasks(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def _periodic(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[Any]],
    ) -> None:
        logger.info(f"{name} loop started ({interval}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    result = await action()
                    if isinstance(result, CommandResult) and not result.success:
                        logger.debug(f"{name}: {result.message}")
                except Exception as e:
                    logger.error(f"{name} error: {e}")
        finally:
            logger.info(f"{name} loop stopped")

    async def _cleanup_operations(self) -> int:
        return self._tracker.cleanup(self.settings.polling.operation_retention)

    async def __aenter__(self) -> "FlexicartDriver":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.disconnect()

    # =========================================================================
    # Status queries
    # =========================================================================

    async def query_status(self) -> CommandResult:
        """Query hardware and movement status."""
        return await self._correlator.execute(Command.SENSE_REQUEST, SenseControl.STATUS)

    async def query_position(self) -> CommandResult:
        """Query elevator, carousel and current bin positions."""
        return await self._correlator.execute(Command.SENSE_REQUEST, SenseControl.POSITION)

    async def query_inventory(self) -> CommandResult:
        """Query the hardware occupancy bitmap and reconcile the inventory."""
        return await self._correlator.execute(Command.SENSE_REQUEST, SenseControl.INVENTORY)

    async def query_errors(self) -> CommandResult:
        """Query the active hardware error."""
        return await self._correlator.execute(Command.SENSE_REQUEST, SenseControl.ERROR)

    async def query_system_mode(self) -> CommandResult:
        """
        Request the system mode.

        The payload has no parser; it is returned as hex in
        ``data["payload"]``.
        """
        return await self._correlator.execute(Command.SYSTEM_MODE)

    async def ping(self) -> CommandResult:
        """Send the dummy command and expect an ACK."""
        return await self._correlator.execute(Command.DUMMY)

    async def set_on_air_tally(self, on: bool) -> CommandResult:
        """Switch the on-air tally."""
        return await self._correlator.execute(Command.ON_AIR_TALLY, 0x01 if on else 0x00)

    # =========================================================================
    # Macro commands
    # =========================================================================

    async def move_elevator(
        self,
        direction: Union[ElevatorDirection, str],
        wait: bool = True,
    ) -> CommandResult:
        """
        Move the elevator one step up or down.

        Args:
            direction: ElevatorDirection or "up"/"down".
            wait: Wait for the movement to finish.
        """
        if isinstance(direction, str):
            direction = ElevatorDirection[direction.upper()]
        return await self._correlator.execute(
            Command.ELEVATOR_MOVE,
            direction,
            wait=wait,
            params={"direction": direction.name.lower()},
        )

    async def rotate_carousel(
        self,
        direction: Union[CarouselDirection, str],
        wait: bool = True,
    ) -> CommandResult:
        """
        Rotate the carousel one step.

        Args:
            direction: CarouselDirection or "cw"/"ccw".
            wait: Wait for the rotation to finish.
        """
        if isinstance(direction, str):
            direction = CarouselDirection[direction.upper()]
        return await self._correlator.execute(
            Command.CAROUSEL_ROTATE,
            direction,
            wait=wait,
            params={"direction": direction.name.lower()},
        )

    async def move_to_position(self, position: int, wait: bool = True) -> CommandResult:
        """
        Move the mechanism to a bin.

        Args:
            position: Target bin number.
            wait: Wait for the movement to finish.
        """
        if not 1 <= position <= self._inventory.capacity:
            return CommandResult.failed(OutOfRangeError(position, self._inventory.capacity))
        block_type, control = split_position(position)
        return await self._correlator.execute(
            Command.MOVE_TO_POSITION,
            control,
            block_type,
            wait=wait,
            params={"target_bin": position},
        )

    async def load_cassette(self, wait: bool = True) -> CommandResult:
        return await self._correlator.execute(Command.LOAD_UNLOAD, CassetteAction.LOAD, wait=wait)

    async def unload_cassette(self, wait: bool = True) -> CommandResult:
        return await self._correlator.execute(Command.LOAD_UNLOAD, CassetteAction.UNLOAD, wait=wait)

    async def eject_cassette(self, wait: bool = True) -> CommandResult:
        return await self._correlator.execute(Command.EJECT, wait=wait)

    async def initialize(self, wait: bool = True) -> CommandResult:
        """Initialize the mechanics."""
        return await self._correlator.execute(Command.INITIALIZE, wait=wait)

    async def calibrate(self, wait: bool = True) -> CommandResult:
        """Calibrate the actuators."""
        return await self._correlator.execute(Command.CALIBRATE, wait=wait)

    async def wait_for_operation(self, operation_id: str) -> CommandResult:
        """Wait for a running operation started with ``wait=False``."""
        handle = self._correlator.handle(operation_id)
        if handle is None:
            try:
                return operation_result(self._tracker.get(operation_id))
            except FlexicartError as e:
                return CommandResult.failed(e)
        return await handle.result()

    async def cancel_operation(self, operation_id: str) -> CommandResult:
        """
        Cancel completion polling of a running operation.

        The mechanism itself is not stopped; only tracking ends.
        """
        handle = self._correlator.handle(operation_id)
        if handle is None:
            try:
                operation = self._tracker.get(operation_id)
            except FlexicartError as e:
                return CommandResult.failed(e)
            return CommandResult.failed(
                OperationStateError(
                    f"Operation {operation_id} already {operation.status.value}",
                    operation_id=operation_id,
                ),
                operation_id=operation_id,
            )

        handle.cancel()
        await handle.result()
        operation = self._tracker.get(operation_id)
        return CommandResult.ok(
            f"{operation.type.value} {operation.status.value}",
            data=operation.to_dict(),
            operation_id=operation_id,
        )

    # =========================================================================
    # Barcode and lamps
    # =========================================================================

    async def scan_bin(self, position: int) -> ScanResult:
        """Scan one bin and update the inventory."""
        try:
            return await self._scanner.scan_bin(position)
        except OutOfRangeError as e:
            return ScanResult.failed(position, e.message)

    async def scan_range(self, positions: Iterable[int]) -> list[ScanResult]:
        """Scan several bins one after another."""
        return await self._scanner.scan_range(positions)

    async def scan_all(self) -> list[ScanResult]:
        """Scan every bin of the cart."""
        return await self.scan_range(range(1, self._inventory.capacity + 1))

    async def set_bin_lamp(self, position: int, on: bool) -> CommandResult:
        """Switch a bin lamp."""
        try:
            acknowledged = await self._scanner.set_lamp(position, on)
        except OutOfRangeError as e:
            return CommandResult.failed(e)
        state = "on" if on else "off"
        if acknowledged:
            return CommandResult.ok(f"Bin {position} lamp {state}")
        return CommandResult.rejected(f"Bin {position} lamp {state} not acknowledged")

    async def scan_occupied(self) -> list[ScanResult]:
        """Rescan every bin the inventory holds a cassette for."""
        return await self._scanner.scan_occupied()

    def scan_history(self, limit: Optional[int] = None) -> list[ScanResult]:
        return self._scanner.history(limit)

    def barcode_issues(self) -> list[dict[str, Any]]:
        """Stored cassettes with a missing or malformed barcode."""
        return [issue.to_dict() for issue in self._scanner.barcode_issues()]

    def barcode_stats(self) -> dict[str, Any]:
        """Barcode database, inventory and issue statistics."""
        return {**self._scanner.stats(), "auto_scan": self._auto_scan}

    # =========================================================================
    # Automatic scanning
    # =========================================================================

    @property
    def auto_scan_enabled(self) -> bool:
        return self._auto_scan

    def enable_auto_scan(self) -> None:
        """
        Scan newly detected cassettes whenever the inventory changes.

        Bins with a missing or malformed barcode that have not been read
        since they were detected are scanned once.
        """
        if self._auto_scan:
            return
        self._auto_scan = True
        self._consumer.register_handler(EventType.INVENTORY_UPDATE, self._auto_scan_pending)
        logger.info("Automatic barcode scanning enabled")

    def disable_auto_scan(self) -> None:
        if not self._auto_scan:
            return
        self._auto_scan = False
        self._consumer.unregister_handler(EventType.INVENTORY_UPDATE, self._auto_scan_pending)
        logger.info("Automatic barcode scanning disabled")

    async def _auto_scan_pending(self, event: dict[str, Any]) -> None:
        if not (self._auto_scan and self._connected):
            return
        positions = self._scanner.pending_scans()
        if not positions:
            return
        logger.info(f"Auto-scanning {len(positions)} bins: {positions}")
        await self._scanner.scan_range(positions)

    # =========================================================================
    # Barcode database
    # =========================================================================

    def add_known_barcode(self, barcode: str, **metadata: Any) -> dict[str, Any]:
        """Register a known cassette barcode with its metadata (title, ...)."""
        return self._scanner.database.add(barcode, **metadata)

    def export_barcodes(self) -> dict[str, Any]:
        return self._scanner.database.export()

    def import_barcodes(self, data: dict[str, Any]) -> CommandResult:
        """Replace the barcode database with an export."""
        try:
            count = self._scanner.database.import_snapshot(data)
        except DataError as e:
            return CommandResult.failed(e)
        return CommandResult.ok(f"Imported {count} barcodes", data=self._scanner.database.stats())

    # =========================================================================
    # Inventory snapshots
    # =========================================================================

    def export_inventory(self) -> dict[str, Any]:
        """Export the inventory as a snapshot dictionary."""
        return self._inventory.export()

    async def import_inventory(self, snapshot: dict[str, Any]) -> CommandResult:
        """
        Replace the inventory with a snapshot.

        The current inventory is kept if the snapshot is invalid.
        """
        try:
            count = self._inventory.import_snapshot(snapshot)
        except DataError as e:
            return CommandResult.failed(e)
        await self._correlator.publish_inventory()
        return CommandResult.ok(
            f"Imported {count} inventory records",
            data=self._inventory.stats().to_dict(),
        )
