"""
System status model.

Aggregates communication, hardware, movement, on-air and error state of the
cart. Sections are updated by shallow merges of parsed response payloads.
"""

from collections import deque
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Sections
# =============================================================================


@dataclass
class CommunicationStatus:
    """Link bookkeeping."""

    connected: bool = False
    last_response_time: Optional[str] = None
    response_time_ms: float = 0.0
    error_count: int = 0
    busy: bool = False


@dataclass
class HardwareStatus:
    """Hardware flags reported by the status payload."""

    power_on: bool = False
    initialized: bool = False
    emergency_stop: bool = False


@dataclass
class MovementStatus:
    """Elevator and carousel positions."""

    elevator_position: int = 0
    elevator_moving: bool = False
    carousel_position: int = 0
    carousel_moving: bool = False
    current_bin: int = 0

    @property
    def is_moving(self) -> bool:
        return self.elevator_moving or self.carousel_moving


@dataclass
class OnAirStatus:
    """On-air tally."""

    tally_on: bool = False


@dataclass
class ErrorStatus:
    """Hardware error state and recent error history."""

    active: bool = False
    last_error: Optional[dict[str, Any]] = None
    history: deque = field(default_factory=lambda: deque(maxlen=50))


class OperationalState(str, Enum):
    """Single label summarizing the cart state."""

    ERROR = "ERROR"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    MOVING = "MOVING"
    BUSY = "BUSY"
    ON_AIR = "ON_AIR"
    READY = "READY"
    IDLE = "IDLE"


SECTIONS = ("communication", "hardware", "movement", "on_air", "errors")


# =============================================================================
# System Status
# =============================================================================


class SystemStatus:
    """
    Shared status of one cart.

    Only the correlator writes to this object; everything else reads it.

    Attributes:
        cart_id: Cart identifier.
        capacity: Number of bins.
        communication: Link bookkeeping.
        hardware: Hardware flags.
        movement: Mechanism positions.
        on_air: Tally state.
        errors: Hardware error state.
    """

    def __init__(self, cart_id: str = "FC01", capacity: int = 360) -> None:
        self.cart_id = cart_id
        self.capacity = capacity
        self.communication = CommunicationStatus()
        self.hardware = HardwareStatus()
        self.movement = MovementStatus()
        self.on_air = OnAirStatus()
        self.errors = ErrorStatus()
        self.updated_at = datetime.now(timezone.utc).isoformat()

    def merge_from_response(self, section: str, partial: dict[str, Any]) -> None:
        """
        Shallow-merge fields into a section.

        Args:
            section: One of communication, hardware, movement, on_air, errors.
            partial: Field values to overwrite.

        Raises:
            ValueError: If the section or any field is unknown.
        """
        if section not in SECTIONS:
            raise ValueError(f"Unknown status section: {section}")
        target = getattr(self, section)
        known = {f.name for f in fields(target)}
        unknown = set(partial) - known
        if unknown:
            raise ValueError(
                f"Unknown fields for {section}: {', '.join(sorted(unknown))}"
            )
        for name, value in partial.items():
            setattr(target, name, value)
        self.updated_at = datetime.now(timezone.utc).isoformat()

    def merge(self, sections: dict[str, dict[str, Any]]) -> None:
        """Merge several sections at once (parser output)."""
        for section, partial in sections.items():
            self.merge_from_response(section, partial)

    def record_error(self, code: int, name: str, message: str = "") -> None:
        """
        Record a hardware error reported by the cart.

        A zero code clears the active flag without touching the history.
        """
        if not code:
            self.clear_errors()
            return
        entry = {
            "code": code,
            "name": name,
            "message": message or name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.errors.active = True
        self.errors.last_error = entry
        self.errors.history.append(entry)
        self.updated_at = entry["timestamp"]

    def clear_errors(self) -> None:
        self.errors.active = False

    def is_ready(self) -> bool:
        """
        Check if the cart accepts movement commands.

        Powered and initialized, no emergency stop, link connected and
        nothing moving.
        """
        return (
            self.hardware.power_on
            and self.hardware.initialized
            and not self.hardware.emergency_stop
            and self.communication.connected
            and not self.movement.is_moving
        )

    def operational_state(self) -> OperationalState:
        """Derive the operational label."""
        if self.errors.active or self.communication.error_count > 0:
            return OperationalState.ERROR
        if self.hardware.emergency_stop:
            return OperationalState.EMERGENCY_STOP
        if self.movement.is_moving:
            return OperationalState.MOVING
        if self.communication.busy:
            return OperationalState.BUSY
        if self.on_air.tally_on:
            return OperationalState.ON_AIR
        if self.is_ready():
            return OperationalState.READY
        return OperationalState.IDLE

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        errors = asdict(self.errors)
        errors["history"] = list(self.errors.history)
        return {
            "cart_id": self.cart_id,
            "capacity": self.capacity,
            "updated_at": self.updated_at,
            "state": self.operational_state().value,
            "ready": self.is_ready(),
            "communication": asdict(self.communication),
            "hardware": asdict(self.hardware),
            "movement": asdict(self.movement),
            "on_air": asdict(self.on_air),
            "errors": errors,
        }
