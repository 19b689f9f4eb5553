"""
Operation tracker.

Owns the table of macro operations (movement, load/unload, eject,
initialize, calibrate). An operation starts as pending, moves to
in_progress and ends in exactly one terminal status. Terminal operations
are immutable.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .constants import EXPECTED_DURATIONS, OperationStatus, OperationType
from .exceptions import OperationNotFoundError, OperationStateError


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"status", "result", "error", "progress", "params"})

OperationListener = Callable[[str], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OperationStep:
    """One progress step of an operation."""

    description: str
    progress: Optional[int] = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }


@dataclass
class Operation:
    """
    A tracked macro operation.

    Attributes:
        id: Operation identifier.
        type: Operation type.
        status: Current status.
        started_at: ISO start timestamp.
        params: Command parameters and expected duration.
        steps: Progress steps.
        progress: Latest progress percentage.
        result: Result data of a completed operation.
        error: Error message of a failed operation.
        ended_at: ISO end timestamp once terminal.
        duration: Seconds between start and end once terminal.
    """

    id: str
    type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    started_at: str = field(default_factory=_now)
    params: dict[str, Any] = field(default_factory=dict)
    steps: list[OperationStep] = field(default_factory=list)
    progress: int = 0
    result: Any = None
    error: Optional[str] = None
    ended_at: Optional[str] = None
    duration: Optional[float] = None
    _started_mono: float = field(default_factory=time.monotonic, repr=False)
    _ended_mono: Optional[float] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "params": dict(self.params),
            "steps": [step.to_dict() for step in self.steps],
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "ended_at": self.ended_at,
            "duration": self.duration,
        }


class OperationTracker:
    """Table of operations keyed by id."""

    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}
        self._counter = itertools.count(1)
        self._listeners: list[OperationListener] = []

    def start(
        self,
        op_type: OperationType,
        params: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Register a new pending operation.

        Args:
            op_type: Operation type.
            params: Command parameters.

        Returns:
            Operation id.
        """
        op_id = f"op_{next(self._counter)}_{int(time.time() * 1000)}"
        op_params = dict(params or {})
        op_params.setdefault("expected_duration", EXPECTED_DURATIONS.get(op_type, 10.0))
        self._operations[op_id] = Operation(id=op_id, type=op_type, params=op_params)
        logger.debug(f"Operation {op_id} started: {op_type.value}")
        return op_id

    def get(self, op_id: str) -> Operation:
        """
        Get an operation by id.

        Raises:
            OperationNotFoundError: If no such operation exists.
        """
        try:
            return self._operations[op_id]
        except KeyError:
            raise OperationNotFoundError(
                f"Operation not found: {op_id}",
                operation_id=op_id,
            )

    def update(self, op_id: str, **fields: Any) -> Operation:
        """
        Merge fields into an operation.

        A terminal status sets ``ended_at`` and ``duration`` and notifies
        listeners.

        Raises:
            OperationNotFoundError: If no such operation exists.
            OperationStateError: If the operation is already terminal.
            ValueError: If an unknown field is given.
        """
        operation = self.get(op_id)
        if operation.status.is_terminal:
            raise OperationStateError(
                f"Operation {op_id} already {operation.status.value}",
                operation_id=op_id,
            )
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown operation fields: {', '.join(sorted(unknown))}")

        if "status" in fields:
            fields["status"] = OperationStatus(fields["status"])
        if "params" in fields:
            operation.params.update(fields.pop("params"))
        for name, value in fields.items():
            setattr(operation, name, value)

        if operation.status.is_terminal:
            operation._ended_mono = time.monotonic()
            operation.ended_at = _now()
            operation.duration = operation._ended_mono - operation._started_mono
            logger.info(
                f"Operation {op_id} {operation.status.value} "
                f"after {operation.duration:.2f}s"
            )
            self._notify(op_id)
        return operation

    def add_step(
        self,
        op_id: str,
        description: str,
        progress: Optional[int] = None,
    ) -> OperationStep:
        """
        Append a progress step.

        Raises:
            OperationNotFoundError: If no such operation exists.
            OperationStateError: If the operation is already terminal.
        """
        operation = self.get(op_id)
        if operation.status.is_terminal:
            raise OperationStateError(
                f"Operation {op_id} already {operation.status.value}",
                operation_id=op_id,
            )
        step = OperationStep(description=description, progress=progress)
        operation.steps.append(step)
        if progress is not None:
            operation.progress = progress
        return step

    def active(self) -> list[Operation]:
        """Operations that are pending or in progress."""
        return [op for op in self._operations.values() if op.is_active]

    def all(self) -> list[Operation]:
        return list(self._operations.values())

    def cleanup(self, max_age: float = 3600.0) -> int:
        """
        Drop terminal operations that ended more than ``max_age`` seconds ago.

        Returns:
            Number of removed operations.
        """
        cutoff = time.monotonic() - max_age
        expired = [
            op_id for op_id, op in self._operations.items()
            if op._ended_mono is not None and op._ended_mono < cutoff
        ]
        for op_id in expired:
            del self._operations[op_id]
        if expired:
            logger.debug(f"Removed {len(expired)} finished operations")
        return len(expired)

    def add_listener(self, listener: OperationListener) -> None:
        """Register a callback receiving the id of each finished operation."""
        self._listeners.append(listener)

    def remove_listener(self, listener: OperationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, op_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(op_id)
            except Exception as e:
                logger.error(f"Operation listener failed for {op_id}: {e}")

    def __len__(self) -> int:
        return len(self._operations)
