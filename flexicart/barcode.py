"""
Barcode scan subsystem.

Reads bins with the cart's integrated scanner (SENSE BIN STATUS, with a
BIN STATUS RETURN follow-up), keeps the inventory in step with the results
and drives the bin lamps.

Reply interpretation:
    ACK          bin is empty
    DATA         bin is occupied; barcode is the longest printable run in
                 the payload, or a placeholder derived from the reply bytes
    no reply     bin is assumed occupied while the scanner is still busy
                 (tunable, see ScanSettings.timeout_implies_occupied)
    NAK / BUSY   read failed

Decoded barcodes are validated and looked up in a BarcodeDatabase of known
cassettes. Stored cassettes with a missing or malformed barcode are
reported as barcode issues.
"""

import asyncio
import logging
import re
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from .codec import Response, split_position
from .constants import Command, ResponseKind
from .correlator import Correlator
from .exceptions import (
    FlexicartError,
    InvalidSnapshotError,
    OutOfRangeError,
    ResponseTimeoutError,
    TransportError,
)
from .inventory import CassetteRecord
from .results import ScanResult, ScanSource
from .settings import ScanSettings


logger = logging.getLogger(__name__)

LAMP_ON = 0x01
LAMP_OFF = 0x00

PRINTABLE_RUN = re.compile(rb"[\x20-\x7e]+")

CATEGORY_BY_SOURCE = {
    ScanSource.DECODED: "scanned",
    ScanSource.PLACEHOLDER: "no_barcode",
    ScanSource.TIMEOUT: "timeout_detected",
}


def extract_barcode(payload: bytes, min_length: int = 3) -> Optional[str]:
    """
    Find the longest run of printable ASCII characters.

    Args:
        payload: Reply payload.
        min_length: Shortest run accepted as a barcode.

    Returns:
        Stripped barcode text or None.

    Example:
        >>> extract_barcode(b"\\x01\\x00ABC123\\x03")
        'ABC123'
    """
    runs = [m.group().strip() for m in PRINTABLE_RUN.finditer(payload)]
    candidates = [r for r in runs if len(r) >= min_length]
    if not candidates:
        return None
    return max(candidates, key=len).decode("ascii")


def placeholder_barcode(position: int, raw: bytes) -> str:
    """
    Synthesize a deterministic id for an occupied bin without a barcode.

    Example:
        >>> placeholder_barcode(5, bytes([0x02, 0x06, 0x01, 0x01, 0x00, 0x62, 0x05, 0x80]))
        'FC005233'
    """
    return f"FC{position * 1000 + sum(raw[2:8]) % 1000:06d}"


# =============================================================================
# Validation
# =============================================================================


BARCODE_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class BarcodeValidation:
    """
    Outcome of a barcode check.

    Attributes:
        valid: Whether the barcode is well formed.
        checksum: Sum of character codes modulo 256.
        error: Reason of a failed check.
    """

    valid: bool
    checksum: Optional[int] = None
    error: Optional[str] = None


def validate_barcode(
    barcode: Optional[str],
    min_length: int = 3,
    max_length: int = 20,
) -> BarcodeValidation:
    """
    Check that a barcode has a usable length and character set.

    Letters, digits, ``-`` and ``_`` are accepted.

    Example:
        >>> validate_barcode("AB")
        BarcodeValidation(valid=False, checksum=None, error='Barcode too short')
        >>> validate_barcode("ABC")
        BarcodeValidation(valid=True, checksum=198, error=None)
    """
    if not barcode or len(barcode) < min_length:
        return BarcodeValidation(valid=False, error="Barcode too short")
    checksum = sum(ord(c) for c in barcode) % 256
    valid = BARCODE_PATTERN.fullmatch(barcode) is not None and len(barcode) <= max_length
    return BarcodeValidation(
        valid=valid,
        checksum=checksum,
        error=None if valid else "Invalid barcode format",
    )


class BarcodeIssueKind(str, Enum):
    """Why a stored cassette needs a (re)scan."""

    NO_BARCODE = "no_barcode"
    INVALID_BARCODE = "invalid_barcode"


@dataclass(frozen=True)
class BarcodeIssue:
    """A stored cassette whose barcode is missing or malformed."""

    position: int
    kind: BarcodeIssueKind
    record: CassetteRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "issue": self.kind.value,
            "cassette": self.record.to_dict(),
        }


# =============================================================================
# Barcode Database
# =============================================================================


class BarcodeDatabase:
    """
    Known barcodes with their metadata and scan counts.

    Entries are plain dictionaries so they export as JSON unchanged.
    """

    VERSION = "1.0"

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, barcode: object) -> bool:
        return barcode in self._entries

    def add(self, barcode: str, **metadata: Any) -> dict[str, Any]:
        """Add or replace an entry; the scan count starts at zero."""
        entry = {
            **metadata,
            "date_added": datetime.now(timezone.utc).isoformat(),
            "scan_count": 0,
        }
        self._entries[barcode] = entry
        return entry

    def remove(self, barcode: str) -> bool:
        return self._entries.pop(barcode, None) is not None

    def get(self, barcode: str) -> Optional[dict[str, Any]]:
        return self._entries.get(barcode)

    def lookup(self, barcode: str) -> Optional[dict[str, Any]]:
        """Find an entry and count the scan."""
        entry = self._entries.get(barcode)
        if entry is not None:
            entry["scan_count"] = entry.get("scan_count", 0) + 1
            entry["last_scanned"] = datetime.now(timezone.utc).isoformat()
        return entry

    def stats(self) -> dict[str, Any]:
        total = len(self._entries)
        scans = sum(e.get("scan_count", 0) for e in self._entries.values())
        return {
            "total_barcodes": total,
            "total_scans": scans,
            "average_scans_per_barcode": round(scans / total, 1) if total else 0.0,
        }

    def export(self) -> dict[str, Any]:
        return {
            "metadata": {
                "exportDate": datetime.now(timezone.utc).isoformat(),
                "totalEntries": len(self._entries),
                "version": self.VERSION,
            },
            "barcodes": {code: dict(entry) for code, entry in self._entries.items()},
        }

    def import_snapshot(self, data: Mapping[str, Any]) -> int:
        """
        Replace all entries with those of an export.

        Returns:
            Number of imported entries.

        Raises:
            InvalidSnapshotError: If the export has no barcodes object or an
                entry is not an object.
        """
        barcodes = data.get("barcodes") if isinstance(data, Mapping) else None
        if not isinstance(barcodes, Mapping):
            raise InvalidSnapshotError("Barcode export without barcodes object")
        entries: dict[str, dict[str, Any]] = {}
        for code, entry in barcodes.items():
            if not isinstance(entry, Mapping):
                raise InvalidSnapshotError(f"Barcode {code} entry must be an object")
            entries[str(code)] = dict(entry)
        self._entries = entries
        return len(entries)


class BarcodeScanner:
    """
    Reads bins and reconciles the inventory.

    Attributes:
        settings: Scanner settings.
    """

    def __init__(
        self,
        correlator: Correlator,
        settings: Optional[ScanSettings] = None,
        database: Optional[BarcodeDatabase] = None,
    ) -> None:
        """
        Initialize the scanner.

        Args:
            correlator: Correlator used for every exchange.
            settings: Scanner settings.
            database: Known barcodes; an empty one is created when omitted.
        """
        self._correlator = correlator
        self.settings = settings or ScanSettings()
        self.database = database if database is not None else BarcodeDatabase()
        self._history: deque[ScanResult] = deque(maxlen=self.settings.history_size)

    @property
    def inventory(self):
        return self._correlator.inventory

    def validate(self, barcode: Optional[str]) -> BarcodeValidation:
        """Validate a barcode with the configured length limits."""
        return validate_barcode(
            barcode,
            self.settings.min_barcode_length,
            self.settings.max_barcode_length,
        )

    def _check_position(self, position: int) -> None:
        capacity = self.inventory.capacity
        if isinstance(position, bool) or not isinstance(position, int) or not 1 <= position <= capacity:
            raise OutOfRangeError(position, capacity)

    async def _request(self, command: Command, position: int) -> Optional[Response]:
        block_type, control = split_position(position)
        frame = self._correlator.frame(command, control, block_type)
        try:
            return await self._correlator.transact(
                frame,
                self.settings.scan_timeout,
                silence_ok=True,
            )
        except ResponseTimeoutError:
            return None

    async def read_bin(self, position: int) -> ScanResult:
        """
        Read one bin with the scanner.

        Args:
            position: Bin number.

        Returns:
            Scan result. Transport failures other than a reply timeout give
            a failed result.

        Raises:
            OutOfRangeError: If the position is outside 1..capacity.
        """
        self._check_position(position)
        try:
            response = await self._request(Command.SENSE_BIN_STATUS, position)
            if response is None and self.settings.follow_up:
                logger.debug(f"Bin {position}: no reply, requesting bin status return")
                await asyncio.sleep(self.settings.follow_up_delay)
                response = await self._request(Command.BIN_STATUS_RETURN, position)
        except TransportError as e:
            return ScanResult.failed(position, e.message)

        if response is None:
            if self.settings.timeout_implies_occupied:
                return ScanResult(position=position, occupied=True, source=ScanSource.TIMEOUT)
            return ScanResult.failed(position, "No reply from scanner")

        if response.kind is ResponseKind.ACK:
            return ScanResult(
                position=position,
                occupied=False,
                raw=response.raw,
                source=ScanSource.EMPTY,
            )

        if response.kind is ResponseKind.DATA:
            barcode = extract_barcode(response.payload, self.settings.min_barcode_length)
            source = ScanSource.DECODED
            valid = True
            if barcode is None:
                barcode = placeholder_barcode(position, response.raw)
                source = ScanSource.PLACEHOLDER
            else:
                valid = self.validate(barcode).valid
            return ScanResult(
                position=position,
                occupied=True,
                barcode=barcode,
                raw=response.raw,
                source=source,
                valid=valid,
            )

        return ScanResult.failed(
            position,
            f"Unexpected {response.kind.value} reply",
            raw=response.raw,
        )

    async def set_lamp(self, position: int, on: bool) -> bool:
        """
        Switch a bin lamp.

        Returns:
            True if the cart acknowledged. Failures are logged, not raised.
        """
        self._check_position(position)
        block_type, control = split_position(position)
        try:
            await self._correlator.control(
                Command.SET_BIN_LAMP,
                control,
                block_type,
                LAMP_ON if on else LAMP_OFF,
            )
            return True
        except FlexicartError as e:
            logger.warning(f"Bin {position}: lamp {'on' if on else 'off'} failed: {e.message}")
            return False

    def _apply(self, result: ScanResult) -> None:
        position = result.position
        if not result.occupied:
            self.inventory.remove(position)
            return

        existing = self.inventory.get(position)
        barcode = result.barcode
        if barcode is None and existing is not None:
            barcode = existing.barcode
        title = existing.title if existing else ""
        metadata = dict(existing.metadata) if existing else {}
        if result.valid is not None:
            metadata["barcode_valid"] = result.valid

        if result.source is ScanSource.DECODED:
            entry = self.database.lookup(barcode)
            if entry is not None and not title:
                title = entry.get("title", "")

        record = CassetteRecord(
            id=barcode or f"FC_POS_{position}",
            barcode=barcode,
            title=title,
            category=CATEGORY_BY_SOURCE[result.source],
            metadata=metadata,
            last_barcode_read=result.timestamp,
        )
        self.inventory.set(position, record)

    async def scan_bin(self, position: int) -> ScanResult:
        """
        Read a bin, update the inventory and the bin lamp.

        Failed reads leave the inventory untouched.
        """
        result = await self.read_bin(position)
        self._history.append(result)
        if not result.success:
            logger.warning(f"Bin {position}: scan failed: {result.error}")
            return result

        self._apply(result)
        logger.info(
            f"Bin {position}: "
            + (f"{result.barcode or 'occupied'} ({result.source.value})" if result.occupied else "empty")
        )

        if self.settings.control_lamp and result.source is not ScanSource.TIMEOUT:
            await self.set_lamp(position, result.occupied)

        await self._correlator.publish_inventory()
        return result

    async def scan_range(self, positions: Iterable[int]) -> list[ScanResult]:
        """
        Scan several bins one after another.

        Positions outside the cart give failed results.
        """
        results: list[ScanResult] = []
        for index, position in enumerate(positions):
            if index:
                await asyncio.sleep(self.settings.inter_command_delay)
            try:
                results.append(await self.scan_bin(position))
            except OutOfRangeError as e:
                results.append(ScanResult.failed(position, e.message))
        return results

    async def scan_occupied(self) -> list[ScanResult]:
        """Rescan every bin the inventory holds a record for."""
        return await self.scan_range(self.inventory.occupied_bins())

    # =========================================================================
    # Barcode issues
    # =========================================================================

    def barcode_issues(self) -> list[BarcodeIssue]:
        """
        Stored cassettes without a real barcode or with a malformed one.

        Placeholder and timeout records count as missing a barcode.
        """
        issues: list[BarcodeIssue] = []
        for position, record in self.inventory.records():
            if record.barcode is None or record.category == "no_barcode":
                kind = BarcodeIssueKind.NO_BARCODE
            elif (
                record.metadata.get("barcode_valid") is False
                or not self.validate(record.barcode).valid
            ):
                kind = BarcodeIssueKind.INVALID_BARCODE
            else:
                continue
            issues.append(BarcodeIssue(position, kind, record))
        return issues

    def pending_scans(self) -> list[int]:
        """Bins with a barcode issue that have not been read since they were detected."""
        return [
            issue.position
            for issue in self.barcode_issues()
            if issue.record.last_barcode_read is None
        ]

    def stats(self) -> dict[str, Any]:
        """Database, inventory and barcode issue statistics."""
        issues = self.barcode_issues()
        return {
            "database": self.database.stats(),
            "inventory": self.inventory.stats().to_dict(),
            "issues": {
                "total": len(issues),
                "by_type": dict(Counter(issue.kind.value for issue in issues)),
            },
            "scans": len(self._history),
        }

    def history(self, limit: Optional[int] = None) -> list[ScanResult]:
        """Recent scan results, oldest first."""
        items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear_history(self) -> None:
        self._history.clear()
