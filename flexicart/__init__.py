"""
FlexiCart Driver Package.

Async driver for FlexiCart robotic cassette carts: binary frame codec,
serial transport, command correlation with macro completion polling,
operation tracking, inventory and barcode scanning.

Example:
    import asyncio
    from flexicart import FlexicartDriver, EventType

    async def on_inventory(event):
        print(f"Occupied bins: {event['stats']['occupied']}")

    async def main():
        driver = FlexicartDriver()
        driver.add_handler(EventType.INVENTORY_UPDATE, on_inventory)

        await driver.connect()
        await driver.scan_range(range(1, 31))

        await asyncio.Future()  # Run forever

    asyncio.run(main())
"""

from .constants import (
    Command,
    CommandKind,
    SenseControl,
    ElevatorDirection,
    CarouselDirection,
    CassetteAction,
    ChecksumScheme,
    ResponseKind,
    OperationType,
    OperationStatus,
    COMMAND_KINDS,
    ERROR_CODES,
    get_command_name,
    get_error_name,
    unit_mask,
)
from .checksum import (
    calculate_checksum,
    twos_complement_checksum,
    verify_checksum,
    xor_checksum,
)
from .codec import (
    Frame,
    Response,
    classify,
    decode_response,
    encode,
    split_payload,
)
from .exceptions import (
    FlexicartError,
    CartConnectionError,
    TransportError,
    OpenTimeoutError,
    OpenFailedError,
    WriteFailedError,
    ResponseTimeoutError,
    ChannelBusyError,
    ProtocolError,
    InvalidFieldError,
    UnexpectedResponseError,
    CommandRejectedError,
    OperationError,
    OperationNotFoundError,
    OperationStateError,
    OperationTimeoutError,
    OperationCancelledError,
    DataError,
    OutOfRangeError,
    InvalidSnapshotError,
    RepositoryError,
    RedisConnectionError,
)
from .settings import (
    Settings,
    ChannelSettings,
    ProtocolProfile,
    PollingSettings,
    ScanSettings,
    InventorySettings,
    RedisSettings,
    LoggingSettings,
    get_settings,
)
from .transport import (
    CommandChannel,
    SerialSession,
    Transport,
)
from .status import (
    OperationalState,
    SystemStatus,
)
from .inventory import (
    CassetteRecord,
    Inventory,
    InventoryStats,
)
from .operations import (
    Operation,
    OperationTracker,
)
from .results import (
    CommandResult,
    ScanResult,
    ScanSource,
)
from .events import (
    EventConsumer,
    EventPublisher,
    EventType,
)
from .correlator import (
    Correlator,
    MacroHandle,
)
from .barcode import (
    BarcodeDatabase,
    BarcodeIssue,
    BarcodeIssueKind,
    BarcodeScanner,
    BarcodeValidation,
    validate_barcode,
)
from .repository import InventoryRepository
from .driver import FlexicartDriver


__all__ = [
    # Main driver
    'FlexicartDriver',

    # Constants and enums
    'Command',
    'CommandKind',
    'SenseControl',
    'ElevatorDirection',
    'CarouselDirection',
    'CassetteAction',
    'ChecksumScheme',
    'ResponseKind',
    'OperationType',
    'OperationStatus',
    'OperationalState',
    'EventType',
    'ScanSource',
    'COMMAND_KINDS',
    'ERROR_CODES',

    # Utility functions
    'get_command_name',
    'get_error_name',
    'unit_mask',
    'calculate_checksum',
    'twos_complement_checksum',
    'xor_checksum',
    'verify_checksum',
    'validate_barcode',

    # Codec and transport
    'Frame',
    'Response',
    'encode',
    'classify',
    'decode_response',
    'split_payload',
    'Transport',
    'SerialSession',
    'CommandChannel',

    # State
    'Correlator',
    'MacroHandle',
    'SystemStatus',
    'Inventory',
    'InventoryStats',
    'CassetteRecord',
    'Operation',
    'OperationTracker',
    'BarcodeScanner',
    'BarcodeDatabase',
    'BarcodeIssue',
    'BarcodeIssueKind',
    'BarcodeValidation',
    'InventoryRepository',
    'EventPublisher',
    'EventConsumer',

    # Results
    'CommandResult',
    'ScanResult',

    # Settings
    'Settings',
    'ChannelSettings',
    'ProtocolProfile',
    'PollingSettings',
    'ScanSettings',
    'InventorySettings',
    'RedisSettings',
    'LoggingSettings',
    'get_settings',

    # Exceptions
    'FlexicartError',
    'CartConnectionError',
    'TransportError',
    'OpenTimeoutError',
    'OpenFailedError',
    'WriteFailedError',
    'ResponseTimeoutError',
    'ChannelBusyError',
    'ProtocolError',
    'InvalidFieldError',
    'UnexpectedResponseError',
    'CommandRejectedError',
    'OperationError',
    'OperationNotFoundError',
    'OperationStateError',
    'OperationTimeoutError',
    'OperationCancelledError',
    'DataError',
    'OutOfRangeError',
    'InvalidSnapshotError',
    'RepositoryError',
    'RedisConnectionError',
]

__version__ = '1.0.0'
