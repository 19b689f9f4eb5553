"""
FlexiCart Packet Codec.

Builds command frames and classifies raw responses.

Frame Structure:
    STX (0x02) | BC | UA1 | UA2 | BT | CMD | CTRL | DATA | CS

Where:
    - STX: Start of frame marker (always 0x02)
    - BC: Byte count of UA1..DATA (always 0x06)
    - UA1: Device class (0x01 for FlexiCart)
    - UA2: Bit-mapped unit address (bit i selects unit i+1, 0xFF broadcast)
    - BT: Block type, carries the high byte of bin numbers above 255
    - CMD: Command byte
    - CTRL: Command parameter
    - DATA: Command data (0x80 by default)
    - CS: Checksum over BC..DATA
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .checksum import calculate_checksum, verify_checksum
from .constants import (
    BYTE_COUNT,
    DEFAULT_DATA,
    FRAME_LENGTH,
    PAYLOAD_OFFSET,
    STX,
    ResponseKind,
)
from .exceptions import InvalidFieldError
from .settings import ProtocolProfile


logger = logging.getLogger(__name__)

DEFAULT_PROFILE = ProtocolProfile()


def _check_byte(name: str, value: int) -> int:
    if not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise InvalidFieldError(name, value)
    return value


def hex_dump(data: bytes) -> str:
    """Format bytes as space-separated uppercase hex."""
    return " ".join(f"{b:02X}" for b in data)


@dataclass(frozen=True)
class Frame:
    """
    A 9-byte FlexiCart command frame.

    Attributes:
        unit: Bit-mapped unit address (UA2).
        command: Command byte.
        block_type: Block type byte.
        control: Control byte.
        data: Data byte.
        ua1: Device class byte.
    """

    unit: int
    command: int
    block_type: int = 0x00
    control: int = 0x00
    data: int = DEFAULT_DATA
    ua1: int = DEFAULT_PROFILE.ua1

    def to_bytes(self, profile: ProtocolProfile = DEFAULT_PROFILE) -> bytes:
        """
        Serialize frame to bytes with checksum.

        Raises:
            InvalidFieldError: If any field is outside 0..255.
        """
        body = bytes([
            BYTE_COUNT,
            _check_byte("ua1", self.ua1),
            _check_byte("unit", self.unit),
            _check_byte("block_type", self.block_type),
            _check_byte("command", self.command),
            _check_byte("control", self.control),
            _check_byte("data", self.data),
        ])
        return bytes([STX]) + body + bytes([calculate_checksum(body, profile.checksum)])

    @classmethod
    def from_bytes(
        cls,
        raw: bytes,
        profile: ProtocolProfile = DEFAULT_PROFILE,
    ) -> Optional["Frame"]:
        """
        Parse a frame from raw bytes.

        Args:
            raw: Exactly one frame.
            profile: Protocol profile selecting the checksum scheme.

        Returns:
            Parsed frame or None if invalid.
        """
        if len(raw) != FRAME_LENGTH:
            logger.debug(f"Frame length mismatch: {len(raw)} bytes")
            return None
        if raw[0] != STX:
            logger.debug(f"Invalid STX byte: 0x{raw[0]:02X}")
            return None
        if raw[1] != BYTE_COUNT:
            logger.debug(f"Invalid byte count: 0x{raw[1]:02X}")
            return None
        if not verify_checksum(raw, profile.checksum):
            logger.debug("Checksum verification failed")
            return None
        return cls(
            ua1=raw[2],
            unit=raw[3],
            block_type=raw[4],
            command=raw[5],
            control=raw[6],
            data=raw[7],
        )


def encode(
    unit: int,
    command: int,
    block_type: int = 0x00,
    control: int = 0x00,
    data: int = DEFAULT_DATA,
    profile: ProtocolProfile = DEFAULT_PROFILE,
) -> bytes:
    """
    Build a command frame.

    Args:
        unit: Bit-mapped unit address.
        command: Command byte.
        block_type: Block type byte.
        control: Control byte.
        data: Data byte.
        profile: Protocol profile (UA1 and checksum scheme).

    Returns:
        9-byte frame ready to send.

    Raises:
        InvalidFieldError: If any field is outside 0..255.

    Example:
        >>> encode(0x01, 0x61, control=0x10).hex(" ")
        '02 06 01 01 00 61 10 80 07'
    """
    frame = Frame(
        unit=unit,
        command=command,
        block_type=block_type,
        control=control,
        data=data,
        ua1=profile.ua1,
    )
    return frame.to_bytes(profile)


def split_position(position: int) -> tuple[int, int]:
    """
    Split a bin number into (block_type, control) bytes.

    The low byte travels in the control field, the high byte in block type.
    """
    if not 0 <= position <= 0xFFFF:
        raise InvalidFieldError("position", position)
    return (position >> 8) & 0xFF, position & 0xFF


def classify(raw: bytes, profile: ProtocolProfile = DEFAULT_PROFILE) -> ResponseKind:
    """
    Classify a raw response.

    Args:
        raw: Bytes collected by the transport.
        profile: Protocol profile with the single-byte reply codes.

    Returns:
        Response kind.
    """
    if not raw:
        return ResponseKind.EMPTY
    if len(raw) > 1:
        return ResponseKind.DATA
    byte = raw[0]
    if byte == profile.ack_byte:
        return ResponseKind.ACK
    if byte == profile.nak_byte:
        return ResponseKind.NAK
    if byte == profile.busy_byte:
        return ResponseKind.BUSY
    return ResponseKind.UNKNOWN


def split_payload(raw: bytes) -> bytes:
    """
    Extract the payload of a data response.

    STX-framed replies of at least six bytes carry their payload after the
    STX, BC, UA1, UA2 and BT header bytes; anything else is returned whole.
    """
    if len(raw) >= PAYLOAD_OFFSET + 1 and raw[0] == STX:
        return bytes(raw[PAYLOAD_OFFSET:])
    return bytes(raw)


@dataclass(frozen=True)
class Response:
    """
    A classified response.

    Attributes:
        kind: Response classification.
        raw: Raw bytes as received.
    """

    kind: ResponseKind
    raw: bytes = b""

    @property
    def payload(self) -> bytes:
        """Payload bytes of a data response, empty otherwise."""
        if self.kind is not ResponseKind.DATA:
            return b""
        return split_payload(self.raw)

    @property
    def hex(self) -> str:
        """Raw bytes as hex."""
        return hex_dump(self.raw)

    @property
    def is_ack(self) -> bool:
        return self.kind is ResponseKind.ACK


def decode_response(raw: bytes, profile: ProtocolProfile = DEFAULT_PROFILE) -> Response:
    """Classify raw bytes into a Response."""
    return Response(kind=classify(raw, profile), raw=bytes(raw))
