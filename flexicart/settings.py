"""
Application settings.

Frozen dataclasses grouping the serial channel, protocol profile, polling,
scanning, inventory, Redis and logging configuration.
"""

from dataclasses import dataclass, field
from typing import Optional

from .constants import (
    ACK_BYTE,
    BUSY_BYTE,
    DEFAULT_CAPACITY,
    MAX_POLLS,
    MAX_RESPONSE_LENGTH,
    NAK_BYTE,
    OPEN_TIMEOUT_S,
    POLL_INTERVAL_S,
    RESPONSE_TERMINATORS,
    RESPONSE_TIMEOUT_S,
    STABLE_POLLS,
    UA1_FLEXICART,
    ChecksumScheme,
)


# =============================================================================
# Configuration Classes
# =============================================================================


@dataclass(frozen=True)
class ChannelSettings:
    """Serial channel configuration."""

    port: str = "/dev/ttyUSB0"
    baudrate: int = 38400
    bytesize: int = 8
    parity: str = "E"
    stopbits: int = 1
    open_timeout: float = OPEN_TIMEOUT_S
    response_timeout: float = RESPONSE_TIMEOUT_S
    max_response_length: int = MAX_RESPONSE_LENGTH
    terminators: tuple[int, ...] = RESPONSE_TERMINATORS
    # Stop collecting once the line stays idle this long after the first byte
    inter_byte_timeout: Optional[float] = None


@dataclass(frozen=True)
class ProtocolProfile:
    """
    Wire-level protocol variant.

    Attributes:
        checksum: Checksum scheme of outgoing and incoming frames.
        ack_byte: Single byte meaning "accepted".
        nak_byte: Single byte meaning "rejected".
        busy_byte: Single byte meaning "busy".
        ua1: Device class address.
        unit: Bit-mapped unit address (UA2).
    """

    checksum: ChecksumScheme = ChecksumScheme.TWOS_COMPLEMENT
    ack_byte: int = ACK_BYTE
    nak_byte: int = NAK_BYTE
    busy_byte: int = BUSY_BYTE
    ua1: int = UA1_FLEXICART
    unit: int = 0x01


@dataclass(frozen=True)
class PollingSettings:
    """Macro completion polling and periodic refresh."""

    poll_interval: float = POLL_INTERVAL_S
    max_polls: int = MAX_POLLS
    stable_polls: int = STABLE_POLLS
    status_refresh_interval: float = 5.0
    inventory_refresh_interval: float = 30.0
    operation_retention: float = 3600.0
    cleanup_interval: float = 60.0


@dataclass(frozen=True)
class ScanSettings:
    """Barcode scanner settings."""

    scan_timeout: float = 1.0
    follow_up: bool = True
    follow_up_delay: float = 0.5
    inter_command_delay: float = 0.2
    min_barcode_length: int = 3
    max_barcode_length: int = 20
    timeout_implies_occupied: bool = True
    control_lamp: bool = True
    history_size: int = 100
    auto_scan: bool = False


@dataclass(frozen=True)
class InventorySettings:
    """Cart inventory settings."""

    cart_id: str = "FC01"
    capacity: int = DEFAULT_CAPACITY


@dataclass(frozen=True)
class RedisSettings:
    """Redis connection settings."""

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    decode_responses: bool = True


@dataclass(frozen=True)
class LoggingSettings:
    """Logging settings."""

    log_file: str = "logs/flexicart.log"
    level: str = "INFO"
    loki_url: Optional[str] = None


# =============================================================================
# Main Settings
# =============================================================================


@dataclass
class Settings:
    """
    Main application settings.

    Aggregates all configuration sections.
    """

    channel: ChannelSettings = field(default_factory=ChannelSettings)
    protocol: ProtocolProfile = field(default_factory=ProtocolProfile)
    polling: PollingSettings = field(default_factory=PollingSettings)
    scan: ScanSettings = field(default_factory=ScanSettings)
    inventory: InventorySettings = field(default_factory=InventorySettings)
    redis: RedisSettings = field(default_factory=RedisSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# Settings Singleton
# =============================================================================


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
