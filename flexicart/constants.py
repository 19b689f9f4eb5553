"""
FlexiCart Protocol Constants and Enumerations.

Frame layout, command bytes and control codes for the cart's binary
command/response protocol. Commands are defined as IntEnum for type safety.
"""

from enum import Enum, IntEnum
from typing import Final


# Frame constants
STX: Final[int] = 0x02
ETX: Final[int] = 0x03
CR: Final[int] = 0x0D
LF: Final[int] = 0x0A
BYTE_COUNT: Final[int] = 0x06  # UA1 + UA2 + BT + CMD + CTRL + DATA
FRAME_LENGTH: Final[int] = 9
UA1_FLEXICART: Final[int] = 0x01  # Device class
DEFAULT_DATA: Final[int] = 0x80
PAYLOAD_OFFSET: Final[int] = 5  # STX + BC + UA1 + UA2 + BT

# Single byte responses (canonical profile)
ACK_BYTE: Final[int] = 0x04
NAK_BYTE: Final[int] = 0x05
BUSY_BYTE: Final[int] = 0x06

# Response framing
RESPONSE_TERMINATORS: Final[tuple[int, ...]] = (ETX, CR, LF)
MAX_RESPONSE_LENGTH: Final[int] = 64

# Timing constants (seconds)
OPEN_TIMEOUT_S: Final[float] = 5.0
RESPONSE_TIMEOUT_S: Final[float] = 3.0
POLL_INTERVAL_S: Final[float] = 0.1
MAX_POLLS: Final[int] = 50
STABLE_POLLS: Final[int] = 3

# Bin ranges
DEFAULT_CAPACITY: Final[int] = 360
MAX_UNITS: Final[int] = 8


class ChecksumScheme(str, Enum):
    """Checksum variants seen on FlexiCart links."""

    TWOS_COMPLEMENT = "twos_complement"
    XOR = "xor"


class Command(IntEnum):
    """
    FlexiCart command bytes.

    Movement commands (0x41-0x47) are macro commands: acknowledged at once,
    completed later.
    """
    SET_BIN_LAMP = 0x09       # Bin lamp on/off
    ELEVATOR_MOVE = 0x41      # Elevator up/down
    CAROUSEL_ROTATE = 0x42    # Carousel cw/ccw
    MOVE_TO_POSITION = 0x43   # Move to bin
    LOAD_UNLOAD = 0x44        # Load/unload cassette
    EJECT = 0x45              # Eject cassette
    INITIALIZE = 0x46         # Initialize mechanics
    CALIBRATE = 0x47          # Calibrate actuators
    DUMMY = 0x50              # Link check
    SENSE_REQUEST = 0x61      # Status/position/inventory/error sense
    SENSE_BIN_STATUS = 0x62   # Bin status with barcode
    SYSTEM_MODE = 0x65        # System mode request
    ON_AIR_TALLY = 0x71       # Tally on/off
    BIN_STATUS_RETURN = 0x72  # Bin status return with barcode data


class SenseControl(IntEnum):
    """Control byte of SENSE_REQUEST selecting the reply payload."""
    STATUS = 0x10
    POSITION = 0x20
    INVENTORY = 0x30
    ERROR = 0x40


class ElevatorDirection(IntEnum):
    """Control byte of ELEVATOR_MOVE."""
    UP = 0x01
    DOWN = 0x02


class CarouselDirection(IntEnum):
    """Control byte of CAROUSEL_ROTATE."""
    CW = 0x01
    CCW = 0x02


class CassetteAction(IntEnum):
    """Control byte of LOAD_UNLOAD."""
    LOAD = 0x01
    UNLOAD = 0x02


class CommandKind(str, Enum):
    """
    How the correlator handles a command.

    IMMEDIATE replies carry data, CONTROL replies are a bare ACK,
    MACRO replies are an ACK followed by completion polling.
    """

    IMMEDIATE = "immediate"
    CONTROL = "control"
    MACRO = "macro"


class ResponseKind(str, Enum):
    """Classification of a raw response."""

    ACK = "ack"
    NAK = "nak"
    BUSY = "busy"
    DATA = "data"
    EMPTY = "empty"
    UNKNOWN = "unknown"


class OperationType(str, Enum):
    """Kinds of macro operations tracked by the operation tracker."""

    ELEVATOR_MOVE = "elevator_move"
    CAROUSEL_ROTATE = "carousel_rotate"
    MOVE_TO_POSITION = "move_to_position"
    LOAD = "load"
    UNLOAD = "unload"
    EJECT = "eject"
    INITIALIZE = "initialize"
    CALIBRATE = "calibrate"


class OperationStatus(str, Enum):
    """Lifecycle states of an operation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


COMMAND_KINDS: Final[dict[Command, CommandKind]] = {
    Command.SET_BIN_LAMP: CommandKind.CONTROL,
    Command.ELEVATOR_MOVE: CommandKind.MACRO,
    Command.CAROUSEL_ROTATE: CommandKind.MACRO,
    Command.MOVE_TO_POSITION: CommandKind.MACRO,
    Command.LOAD_UNLOAD: CommandKind.MACRO,
    Command.EJECT: CommandKind.MACRO,
    Command.INITIALIZE: CommandKind.MACRO,
    Command.CALIBRATE: CommandKind.MACRO,
    Command.DUMMY: CommandKind.CONTROL,
    Command.SENSE_REQUEST: CommandKind.IMMEDIATE,
    Command.SENSE_BIN_STATUS: CommandKind.IMMEDIATE,
    Command.SYSTEM_MODE: CommandKind.IMMEDIATE,
    Command.ON_AIR_TALLY: CommandKind.CONTROL,
    Command.BIN_STATUS_RETURN: CommandKind.IMMEDIATE,
}


# Expected mechanical durations in seconds, recorded with each operation
EXPECTED_DURATIONS: Final[dict[OperationType, float]] = {
    OperationType.ELEVATOR_MOVE: 5.0,
    OperationType.CAROUSEL_ROTATE: 5.0,
    OperationType.MOVE_TO_POSITION: 5.0,
    OperationType.LOAD: 8.0,
    OperationType.UNLOAD: 6.0,
    OperationType.EJECT: 10.0,
    OperationType.INITIALIZE: 45.0,
    OperationType.CALIBRATE: 30.0,
}


# Hardware error codes reported by the error sense payload
ERROR_CODES: Final[dict[int, str]] = {
    0x01: "MECHANICAL_JAM",
    0x02: "POSITION_ERROR",
    0x03: "TIMEOUT",
    0x04: "COMMUNICATION_ERROR",
    0x05: "CALIBRATION_FAILED",
    0x06: "SAFETY_INTERLOCK",
    0x07: "POWER_FAULT",
    0x08: "SENSOR_ERROR",
}


COMMAND_NAMES: dict[int, str] = {
    command.value: command.name for command in Command
}


def get_command_name(command: int | None) -> str:
    """Get human-readable command name from command byte."""
    if command is None:
        return "UNKNOWN"
    return COMMAND_NAMES.get(command, f"CMD_{command:02X}")


def get_error_name(code: int | None) -> str:
    """Get hardware error name from error code."""
    if not code:
        return "NONE"
    return ERROR_CODES.get(code, f"ERROR_{code:02X}")


def operation_type_for(command: int, control: int = 0x00) -> OperationType:
    """
    Map a macro command and its control byte to an operation type.

    Raises:
        ValueError: If the command is not a macro command.
    """
    if command == Command.ELEVATOR_MOVE:
        return OperationType.ELEVATOR_MOVE
    if command == Command.CAROUSEL_ROTATE:
        return OperationType.CAROUSEL_ROTATE
    if command == Command.MOVE_TO_POSITION:
        return OperationType.MOVE_TO_POSITION
    if command == Command.LOAD_UNLOAD:
        return OperationType.LOAD if control == CassetteAction.LOAD else OperationType.UNLOAD
    if command == Command.EJECT:
        return OperationType.EJECT
    if command == Command.INITIALIZE:
        return OperationType.INITIALIZE
    if command == Command.CALIBRATE:
        return OperationType.CALIBRATE
    raise ValueError(f"Not a macro command: {get_command_name(command)}")


def unit_mask(*units: int) -> int:
    """
    Build a bit-mapped UA2 byte selecting the given units (1-based).

    Args:
        units: Unit numbers in 1..8.

    Returns:
        UA2 byte with bit ``unit - 1`` set for every unit.
    """
    mask = 0
    for unit in units:
        if not 1 <= unit <= MAX_UNITS:
            raise ValueError(f"Unit number must be 1-{MAX_UNITS}, got {unit}")
        mask |= 1 << (unit - 1)
    return mask
