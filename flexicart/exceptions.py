"""
Custom exceptions for the FlexiCart driver.

Provides a hierarchy of typed exceptions for transport, protocol,
operation and data errors.
"""

from datetime import datetime, timezone
from typing import Any, Optional


class FlexicartError(Exception):
    """Base exception for all FlexiCart driver errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Optional error code for programmatic handling.
            details: Optional additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for command results."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class CartConnectionError(FlexicartError):
    """Channel could not be opened when the session started."""

    pass


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(FlexicartError):
    """Base exception for serial channel errors."""

    def __init__(
        self,
        message: str,
        port: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.port = port
        if port:
            self.details["port"] = port


class OpenTimeoutError(TransportError):
    """Opening the serial port took too long."""

    pass


class OpenFailedError(TransportError):
    """Serial port could not be opened."""

    pass


class WriteFailedError(TransportError):
    """Frame could not be written to the port."""

    pass


class ResponseTimeoutError(TransportError):
    """No byte was received before the response timeout."""

    pass


class ChannelBusyError(TransportError):
    """A second send was issued while one was outstanding."""

    pass


# =============================================================================
# Protocol Errors
# =============================================================================


class ProtocolError(FlexicartError):
    """Base exception for protocol-level errors."""

    pass


class InvalidFieldError(ProtocolError):
    """A frame field does not fit in one byte."""

    def __init__(self, field: str, value: int, **kwargs: Any) -> None:
        super().__init__(f"Field {field} out of byte range: {value}", **kwargs)
        self.details["field"] = field
        self.details["value"] = value


class UnexpectedResponseError(ProtocolError):
    """The response kind does not match what the command expects."""

    def __init__(
        self,
        message: str,
        response_kind: Optional[str] = None,
        raw: bytes = b"",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        if response_kind:
            self.details["response"] = response_kind
        if raw:
            self.details["raw"] = raw.hex(" ")


class CommandRejectedError(UnexpectedResponseError):
    """Device answered NAK."""

    pass


# =============================================================================
# Operation Errors
# =============================================================================


class OperationError(FlexicartError):
    """Base exception for macro operation errors."""

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.operation_id = operation_id
        if operation_id:
            self.details["operation_id"] = operation_id


class OperationNotFoundError(OperationError):
    """No operation with this id."""

    pass


class OperationStateError(OperationError):
    """Operation already reached a terminal state."""

    pass


class OperationTimeoutError(OperationError):
    """Completion polling gave up without a stable status."""

    pass


class OperationCancelledError(OperationError):
    """Completion polling was cancelled by the caller."""

    pass


# =============================================================================
# Data Errors
# =============================================================================


class DataError(FlexicartError):
    """Base exception for inventory and payload data errors."""

    pass


class OutOfRangeError(DataError):
    """Bin position outside 1..capacity."""

    def __init__(self, position: int, capacity: int, **kwargs: Any) -> None:
        super().__init__(
            f"Invalid bin number: {position}. Must be 1-{capacity}",
            **kwargs,
        )
        self.details["position"] = position
        self.details["capacity"] = capacity


class InvalidSnapshotError(DataError):
    """Inventory snapshot is malformed."""

    pass


# =============================================================================
# Repository Errors
# =============================================================================


class RepositoryError(FlexicartError):
    """Base exception for repository errors."""

    pass


class RedisConnectionError(RepositoryError):
    """Error connecting to Redis."""

    pass
