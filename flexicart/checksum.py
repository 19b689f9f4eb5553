"""
Checksum calculation for FlexiCart frames.

The canonical profile uses the two's complement of the byte sum over
BC..DATA, so that the sum of BC..CS is zero modulo 256. Some units were
observed answering to an XOR checksum instead; both are selectable through
the protocol profile.
"""

from .constants import ChecksumScheme, FRAME_LENGTH


def twos_complement_checksum(data: bytes) -> int:
    """
    Calculate the two's complement checksum of ``data``.

    Args:
        data: Bytes to sum (BC through DATA for a command frame).

    Returns:
        Checksum byte.

    Example:
        >>> twos_complement_checksum(bytes([0x06, 0x01, 0x01, 0x00, 0x61, 0x00, 0x80]))
        23
    """
    return (0x100 - (sum(data) & 0xFF)) & 0xFF


def xor_checksum(data: bytes) -> int:
    """Calculate the XOR of all bytes in ``data``."""
    checksum = 0
    for byte in data:
        checksum ^= byte
    return checksum


def calculate_checksum(
    data: bytes,
    scheme: ChecksumScheme = ChecksumScheme.TWOS_COMPLEMENT,
) -> int:
    """
    Calculate a checksum with the given scheme.

    Args:
        data: Bytes covered by the checksum.
        scheme: Checksum scheme of the protocol profile.

    Returns:
        Checksum byte.
    """
    if scheme is ChecksumScheme.XOR:
        return xor_checksum(data)
    return twos_complement_checksum(data)


def verify_checksum(
    frame: bytes,
    scheme: ChecksumScheme = ChecksumScheme.TWOS_COMPLEMENT,
) -> bool:
    """
    Verify the checksum byte of a complete 9-byte frame.

    Args:
        frame: Complete frame including STX and checksum.
        scheme: Checksum scheme of the protocol profile.

    Returns:
        True if the trailing checksum matches bytes 1..7.
    """
    if len(frame) != FRAME_LENGTH:
        return False
    return calculate_checksum(frame[1:8], scheme) == frame[8]
