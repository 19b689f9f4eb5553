"""
Cassette inventory model.

Tracks which of the cart's bins hold a cassette and the record of each
stored cassette. Bins are numbered 1..capacity; a bin holds at most one
record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from .exceptions import InvalidSnapshotError, OutOfRangeError


SNAPSHOT_VERSION = 1


@dataclass
class CassetteRecord:
    """
    Record of a stored cassette.

    Attributes:
        id: Cassette identifier (barcode or synthesized).
        barcode: Decoded barcode, if any.
        title: Free-form title.
        category: Category label.
        metadata: Additional data.
        last_barcode_read: ISO timestamp of the last scan.
    """

    id: str
    barcode: Optional[str] = None
    title: str = ""
    category: str = "general"
    metadata: dict[str, Any] = field(default_factory=dict)
    last_barcode_read: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "barcode": self.barcode,
            "title": self.title,
            "category": self.category,
            "metadata": dict(self.metadata),
            "lastBarcodeRead": self.last_barcode_read,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CassetteRecord":
        """
        Build a record from its snapshot form.

        Raises:
            InvalidSnapshotError: If the id is missing or fields have wrong types.
        """
        if not isinstance(data, Mapping):
            raise InvalidSnapshotError("Cassette entry must be an object")
        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise InvalidSnapshotError("Cassette entry without id", details={"entry": dict(data)})
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise InvalidSnapshotError(f"Cassette {record_id} metadata must be an object")
        title = data.get("title", "")
        category = data.get("category", "general")
        return cls(
            id=record_id,
            barcode=data.get("barcode"),
            title="" if title is None else title,
            category="general" if category is None else category,
            metadata=dict(metadata),
            last_barcode_read=data.get("lastBarcodeRead"),
        )


@dataclass(frozen=True)
class InventoryStats:
    """Occupancy statistics."""

    total: int
    occupied: int
    empty: int
    occupancy_rate: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "occupied": self.occupied,
            "empty": self.empty,
            "occupancy_rate": self.occupancy_rate,
        }


class Inventory:
    """
    Bin occupancy table of one cart.

    Attributes:
        capacity: Number of bins.
        version: Incremented on every change.
        last_updated: ISO timestamp of the last change.
    """

    def __init__(self, capacity: int = 360) -> None:
        if capacity < 1:
            raise ValueError(f"Capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.version = 1
        self.last_updated: Optional[str] = None
        self._bins: dict[int, CassetteRecord] = {}

    def _check_position(self, position: int) -> None:
        if isinstance(position, bool) or not isinstance(position, int):
            raise OutOfRangeError(position, self.capacity)
        if not 1 <= position <= self.capacity:
            raise OutOfRangeError(position, self.capacity)

    def _touch(self) -> None:
        self.version += 1
        self.last_updated = datetime.now(timezone.utc).isoformat()

    # =========================================================================
    # Bin access
    # =========================================================================

    def set(
        self,
        position: int,
        record: Union[CassetteRecord, Mapping[str, Any]],
    ) -> CassetteRecord:
        """
        Store a cassette record in a bin, replacing any previous one.

        Raises:
            OutOfRangeError: If the position is outside 1..capacity.
        """
        self._check_position(position)
        if not isinstance(record, CassetteRecord):
            data = dict(record)
            data.setdefault("id", f"CART_{position}")
            record = CassetteRecord.from_dict(data)
        self._bins[position] = record
        self._touch()
        return record

    def remove(self, position: int) -> Optional[CassetteRecord]:
        """Empty a bin and return the record it held."""
        self._check_position(position)
        removed = self._bins.pop(position, None)
        if removed is not None:
            self._touch()
        return removed

    def get(self, position: int) -> Optional[CassetteRecord]:
        self._check_position(position)
        return self._bins.get(position)

    def occupied(self, position: int) -> bool:
        self._check_position(position)
        return position in self._bins

    def occupied_bins(self) -> list[int]:
        return sorted(self._bins)

    def empty_bins(self) -> list[int]:
        return [p for p in range(1, self.capacity + 1) if p not in self._bins]

    def records(self) -> list[tuple[int, CassetteRecord]]:
        """All (position, record) pairs ordered by position."""
        return sorted(self._bins.items())

    def clear(self) -> None:
        if self._bins:
            self._bins.clear()
            self._touch()

    # =========================================================================
    # Queries
    # =========================================================================

    def stats(self) -> InventoryStats:
        """
        Compute occupancy statistics.

        Example:
            With capacity 30 and bins 1, 5 and 9 occupied the result is
            ``InventoryStats(total=30, occupied=3, empty=27, occupancy_rate=10.0)``.
        """
        occupied = len(self._bins)
        return InventoryStats(
            total=self.capacity,
            occupied=occupied,
            empty=self.capacity - occupied,
            occupancy_rate=occupied / self.capacity * 100,
        )

    def search(
        self,
        predicate: Callable[[CassetteRecord], bool],
    ) -> list[tuple[int, CassetteRecord]]:
        """Return (position, record) pairs whose record satisfies ``predicate``."""
        return [(p, r) for p, r in self.records() if predicate(r)]

    def find_by_id(self, record_id: str) -> Optional[tuple[int, CassetteRecord]]:
        """Return the first (position, record) pair with the given id."""
        for position, record in self.records():
            if record.id == record_id:
                return position, record
        return None

    # =========================================================================
    # Hardware occupancy
    # =========================================================================

    def apply_occupancy(self, occupancy: Mapping[int, bool]) -> int:
        """
        Reconcile the table with hardware occupancy flags.

        Occupied bins without a record get a placeholder record; bins
        reported empty lose their record. Positions outside the capacity
        are ignored.

        Args:
            occupancy: Mapping of bin number to occupied flag.

        Returns:
            Number of bins changed.
        """
        changed = 0
        for position, is_occupied in occupancy.items():
            if not 1 <= position <= self.capacity:
                continue
            if is_occupied and position not in self._bins:
                self._bins[position] = CassetteRecord(
                    id=f"FC_POS_{position}",
                    category="detected",
                )
                changed += 1
            elif not is_occupied and position in self._bins:
                del self._bins[position]
                changed += 1
        if changed:
            self._touch()
        return changed

    # =========================================================================
    # Snapshots
    # =========================================================================

    def export(self) -> dict[str, Any]:
        """Export occupied bins as a snapshot dictionary."""
        bins = [
            {"position": position, "cassette": record.to_dict()}
            for position, record in self.records()
        ]
        return {
            "metadata": {
                "version": SNAPSHOT_VERSION,
                "exportedAt": datetime.now(timezone.utc).isoformat(),
                "totalEntries": len(bins),
                "capacity": self.capacity,
            },
            "bins": bins,
        }

    def import_snapshot(self, snapshot: Mapping[str, Any]) -> int:
        """
        Replace the table with the contents of a snapshot.

        The snapshot is validated completely before anything is replaced.

        Returns:
            Number of imported records.

        Raises:
            InvalidSnapshotError: If the snapshot is malformed.
            OutOfRangeError: If an entry's position is outside 1..capacity.
        """
        if not isinstance(snapshot, Mapping):
            raise InvalidSnapshotError("Snapshot must be an object")
        if not isinstance(snapshot.get("metadata"), Mapping):
            raise InvalidSnapshotError("Snapshot metadata missing")
        entries = snapshot.get("bins")
        if not isinstance(entries, list):
            raise InvalidSnapshotError("Snapshot bins must be a list")

        staged: dict[int, CassetteRecord] = {}
        for entry in entries:
            if not isinstance(entry, Mapping) or "position" not in entry:
                raise InvalidSnapshotError("Bin entry without position")
            position = entry["position"]
            self._check_position(position)
            if position in staged:
                raise InvalidSnapshotError(
                    f"Duplicate bin position: {position}",
                    details={"position": position},
                )
            staged[position] = CassetteRecord.from_dict(entry.get("cassette"))

        self._bins = staged
        self._touch()
        return len(staged)
