"""
Value objects returned to callers.

Immutable results of commands and barcode scans.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .exceptions import FlexicartError


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Command Result
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    """
    Result of a driver command.

    Attributes:
        success: Whether the command succeeded.
        message: Human-readable message.
        timestamp: ISO timestamp.
        operation_id: Id of the macro operation, if one was created.
        error: Error code of a failed command.
        data: Command-specific data.
    """

    success: bool
    message: str = ""
    timestamp: str = field(default_factory=_now)
    operation_id: Optional[str] = None
    error: Optional[str] = None
    data: Any = None

    @classmethod
    def ok(
        cls,
        message: str,
        data: Any = None,
        operation_id: Optional[str] = None,
    ) -> "CommandResult":
        """Create a successful result."""
        return cls(success=True, message=message, data=data, operation_id=operation_id)

    @classmethod
    def failed(
        cls,
        error: FlexicartError,
        operation_id: Optional[str] = None,
    ) -> "CommandResult":
        """Create a failed result from a driver error."""
        return cls(
            success=False,
            message=error.message,
            error=error.code,
            data=error.details or None,
            operation_id=operation_id,
        )

    @classmethod
    def rejected(cls, message: str, error: str = "CommandRejected") -> "CommandResult":
        """Create a result for a command the cart refused."""
        return cls(success=False, message=message, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.operation_id:
            result["operation_id"] = self.operation_id
        if self.error:
            result["error"] = self.error
        if self.data is not None:
            result["data"] = self.data
        return result


# =============================================================================
# Scan Result
# =============================================================================


class ScanSource(str, Enum):
    """Where the occupancy and barcode of a scan came from."""

    EMPTY = "empty"              # ACK, no cassette
    DECODED = "decoded"          # Printable barcode found in payload
    PLACEHOLDER = "placeholder"  # Data without readable barcode
    TIMEOUT = "timeout"          # No reply, occupancy assumed


@dataclass(frozen=True)
class ScanResult:
    """
    Result of reading one bin.

    Attributes:
        position: Bin number.
        occupied: Whether a cassette is (believed to be) present.
        barcode: Decoded or placeholder barcode.
        raw: Raw reply bytes.
        source: How the result was derived.
        valid: Whether a decoded barcode passed validation.
        success: Whether the read produced a usable result.
        error: Error message of a failed read.
        timestamp: ISO timestamp.
    """

    position: int
    occupied: bool = False
    barcode: Optional[str] = None
    raw: bytes = b""
    source: Optional[ScanSource] = None
    valid: Optional[bool] = None
    success: bool = True
    error: Optional[str] = None
    timestamp: str = field(default_factory=_now)

    @property
    def is_placeholder(self) -> bool:
        return self.source is ScanSource.PLACEHOLDER

    @classmethod
    def failed(cls, position: int, error: str, raw: bytes = b"") -> "ScanResult":
        return cls(position=position, success=False, error=error, raw=raw)

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "occupied": self.occupied,
            "barcode": self.barcode,
            "raw": self.raw.hex(" "),
            "source": self.source.value if self.source else None,
            "valid": self.valid,
            "success": self.success,
            "error": self.error,
            "timestamp": self.timestamp,
        }
