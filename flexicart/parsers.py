"""
Payload parsers for immediate responses.

Each parser takes the payload of a DATA response (see codec.split_payload)
and returns the fields it could extract. Parsers never raise on short
payloads; they return what is there.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .constants import RESPONSE_TERMINATORS, Command, SenseControl, get_error_name


StatusSections = dict[str, dict[str, Any]]


def _bit(value: int, bit: int) -> bool:
    return bool(value & (1 << bit))


def parse_status(payload: bytes) -> StatusSections:
    """
    Parse a status sense payload.

    Layout:
        [0] bit0 initialized, bit1 emergency stop, bit2 hardware error
        [1] bit0 elevator moving, bit1 carousel moving
        [2] elevator position
        [3] carousel position

    Payloads shorter than two bytes carry no status.

    Returns:
        Partial sections keyed by section name.
    """
    if len(payload) < 2:
        return {}

    flags, motion = payload[0], payload[1]
    sections: StatusSections = {
        "hardware": {
            "power_on": True,
            "initialized": _bit(flags, 0),
            "emergency_stop": _bit(flags, 1),
        },
        "movement": {
            "elevator_moving": _bit(motion, 0),
            "carousel_moving": _bit(motion, 1),
        },
        "errors": {"active": _bit(flags, 2)},
    }
    if len(payload) > 2:
        sections["movement"]["elevator_position"] = payload[2]
    if len(payload) > 3:
        sections["movement"]["carousel_position"] = payload[3]
    return sections


def parse_position(payload: bytes) -> StatusSections:
    """
    Parse a position sense payload.

    Layout: [1] elevator position, [2] current bin, [3] carousel position.
    """
    movement: dict[str, Any] = {}
    if len(payload) > 1:
        movement["elevator_position"] = payload[1]
    if len(payload) > 2:
        movement["current_bin"] = payload[2]
    if len(payload) > 3:
        movement["carousel_position"] = payload[3]
    return {"movement": movement} if movement else {}


def parse_inventory(payload: bytes, capacity: int) -> dict[int, bool]:
    """
    Parse an inventory occupancy bitmap.

    Bit i of byte k is bin 8k+i+1. One trailing terminator byte is
    stripped. Bits beyond ``capacity`` are ignored.

    Args:
        payload: Inventory payload.
        capacity: Number of bins of the cart.

    Returns:
        Mapping of bin number to occupied flag for every bin covered.
    """
    if payload and payload[-1] in RESPONSE_TERMINATORS:
        payload = payload[:-1]

    occupancy: dict[int, bool] = {}
    for index, byte in enumerate(payload):
        for bit in range(8):
            position = index * 8 + bit + 1
            if position > capacity:
                return occupancy
            occupancy[position] = _bit(byte, bit)
    return occupancy


@dataclass(frozen=True)
class ErrorReport:
    """Hardware error sense result."""

    code: int
    name: str

    @property
    def active(self) -> bool:
        return self.code != 0

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "name": self.name, "active": self.active}


def parse_error(payload: bytes) -> ErrorReport:
    """Parse an error sense payload: [0] error code, 0 means clear."""
    code = payload[0] if payload else 0
    return ErrorReport(code=code, name=get_error_name(code))


SENSE_PARSERS: dict[int, Callable[..., Any]] = {
    SenseControl.STATUS: parse_status,
    SenseControl.POSITION: parse_position,
    SenseControl.INVENTORY: parse_inventory,
    SenseControl.ERROR: parse_error,
}


def parser_for(command: int, control: int) -> Optional[Callable[..., Any]]:
    """Select the payload parser for an immediate command."""
    if command == Command.SENSE_REQUEST:
        return SENSE_PARSERS.get(control)
    return None
