"""Inventory model: fixed-shape file records, package selection, and in-memory storage.

An inventory is the table of files that make up one or more data packages.
Every orchestrator reads its rows through an :class:`InventoryStore` and hands
back mutated *copies*; callers persist those copies with
:meth:`InventoryStore.merge`, which applies the optimistic merge rules in
:func:`merge_record` so that ``created`` never regresses and an assigned
identifier is only replaced during an explicit version transition.

Rows arriving from CSV files or data frames are validated exactly once, in
:meth:`InventoryRecord.from_mapping`; past that boundary the rest of the
package works with typed attributes only.
"""

from __future__ import annotations

import csv
import logging
import math
import threading
from collections import OrderedDict
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import DependencyError, InventoryConflictError, PreconditionError

__all__ = [
    "REQUIRED_COLUMNS",
    "COLUMN_ALIASES",
    "InventoryRecord",
    "InventoryStore",
    "InMemoryInventory",
    "validate_inventory",
    "select_package",
    "split_package",
    "child_metadata_records",
    "package_is_complete",
    "merge_record",
    "package_order",
    "load_inventory_csv",
    "write_inventory_csv",
]

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: Tuple[str, ...] = (
    "file",
    "checksum",
    "size",
    "package",
    "parent_package",
    "pid",
    "filename",
    "created",
    "ready",
)

# Column names used by older inventories.
COLUMN_ALIASES: Dict[str, str] = {
    "checksum_sha256": "checksum",
    "size_bytes": "size",
    "format": "format_id",
}

DEFAULT_FORMAT_ID = "application/octet-stream"

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0", "", "na", "nan", "none"})
_MISSING_STRINGS = frozenset({"", "na", "nan", "none", "null"})


def _coerce_bool(value: object, *, column: str, file: str) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return False
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise PreconditionError(f"{file}: column '{column}' must be boolean, got {value!r}")


def _coerce_optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    if text.lower() in _MISSING_STRINGS:
        return None
    return text


def _coerce_size(value: object, *, file: str) -> int:
    try:
        size = int(float(str(value).strip()))
    except (TypeError, ValueError) as exc:
        raise PreconditionError(f"{file}: column 'size' must be an integer, got {value!r}") from exc
    if size < 0:
        raise PreconditionError(f"{file}: column 'size' must not be negative")
    return size


@dataclass(slots=True)
class InventoryRecord:
    """One file in the inventory and its processing flags."""

    file: str
    filename: str
    checksum: str
    size: int
    format_id: str = DEFAULT_FORMAT_ID
    package: Optional[str] = None
    parent_package: Optional[str] = None
    is_metadata: bool = False
    pid: Optional[str] = None
    pid_old: Optional[str] = None
    created: bool = False
    resmap_created: bool = False
    ready: bool = True
    updated: bool = False

    @property
    def has_pid(self) -> bool:
        """Return ``True`` when a non-empty identifier has been assigned."""

        return bool(self.pid)

    @property
    def is_complete(self) -> bool:
        """Return ``True`` when the object has an identifier and exists remotely."""

        return self.has_pid and self.created

    def copy(self) -> "InventoryRecord":
        """Return an independent copy of this record."""

        return replace(self)

    def to_mapping(self) -> Dict[str, object]:
        """Return the record as a plain column mapping."""

        return {item.name: getattr(self, item.name) for item in fields(self)}

    @classmethod
    def from_mapping(cls, row: Mapping[str, object]) -> "InventoryRecord":
        """Validate a loosely-typed inventory row and build a record from it."""

        normalized: Dict[str, object] = {}
        for key, value in row.items():
            name = COLUMN_ALIASES.get(str(key).strip(), str(key).strip())
            normalized[name] = value

        missing = [column for column in REQUIRED_COLUMNS if column not in normalized]
        if missing:
            raise PreconditionError(
                f"Inventory row is missing required column(s): {', '.join(missing)}"
            )

        file = _coerce_optional_str(normalized["file"])
        if not file:
            raise PreconditionError("Inventory row has an empty 'file' value")
        filename = _coerce_optional_str(normalized["filename"]) or Path(file).name
        checksum = _coerce_optional_str(normalized["checksum"])
        if not checksum:
            raise PreconditionError(f"{file}: column 'checksum' must not be empty")

        return cls(
            file=file,
            filename=filename,
            checksum=checksum.lower(),
            size=_coerce_size(normalized["size"], file=file),
            format_id=_coerce_optional_str(normalized.get("format_id")) or DEFAULT_FORMAT_ID,
            package=_coerce_optional_str(normalized["package"]),
            parent_package=_coerce_optional_str(normalized["parent_package"]),
            is_metadata=_coerce_bool(
                normalized.get("is_metadata", False), column="is_metadata", file=file
            ),
            pid=_coerce_optional_str(normalized["pid"]),
            pid_old=_coerce_optional_str(normalized.get("pid_old")),
            created=_coerce_bool(normalized["created"], column="created", file=file),
            resmap_created=_coerce_bool(
                normalized.get("resmap_created", False), column="resmap_created", file=file
            ),
            ready=_coerce_bool(normalized["ready"], column="ready", file=file),
            updated=_coerce_bool(normalized.get("updated", False), column="updated", file=file),
        )


class InventoryStore(Protocol):
    """Row-level access to an inventory shared by the orchestrators."""

    def get(self, file: str) -> Optional[InventoryRecord]:
        """Return a copy of the record keyed by *file*, if any."""

    def records(self) -> List[InventoryRecord]:
        """Return copies of every record in inventory order."""

    def package_records(self, package: str) -> List[InventoryRecord]:
        """Return copies of the records belonging to *package*."""

    def child_metadata_records(self, package: str) -> List[InventoryRecord]:
        """Return copies of the metadata records of packages nested under *package*."""

    def merge(self, records: Iterable[InventoryRecord]) -> List[InventoryRecord]:
        """Persist *records* using the optimistic merge rules and return the stored result."""

    def mark_created(self, file: str, pid: str) -> bool:
        """Atomically flip ``created`` to true for *file*; return ``False`` if already set."""


def validate_inventory(records: Sequence[InventoryRecord]) -> None:
    """Ensure *records* is non-empty and keyed by unique file paths."""

    if not records:
        raise PreconditionError("Inventory must contain at least one record")
    seen: set = set()
    for record in records:
        if not isinstance(record, InventoryRecord):
            raise PreconditionError(f"Inventory entries must be InventoryRecord, got {type(record)!r}")
        if record.file in seen:
            raise PreconditionError(f"Inventory contains duplicate file '{record.file}'")
        seen.add(record.file)


def select_package(records: Iterable[InventoryRecord], package: str) -> List[InventoryRecord]:
    """Return copies of the records whose ``package`` equals *package*."""

    return [record.copy() for record in records if record.package == package]


def split_package(
    records: Sequence[InventoryRecord], package: str
) -> Tuple[InventoryRecord, List[InventoryRecord]]:
    """Return the single metadata record and the data records of one package."""

    if not records:
        raise PreconditionError(f"Package '{package}' has no records in the inventory")
    metadata = [record for record in records if record.is_metadata]
    if len(metadata) != 1:
        raise PreconditionError(
            f"Package '{package}' must have exactly one metadata record, found {len(metadata)}"
        )
    data = [record for record in records if not record.is_metadata]
    return metadata[0], data


def child_metadata_records(
    records: Iterable[InventoryRecord], package: str
) -> List[InventoryRecord]:
    """Return copies of the metadata records whose ``parent_package`` is *package*."""

    return [
        record.copy()
        for record in records
        if record.parent_package == package and record.is_metadata
    ]


def package_is_complete(records: Iterable[InventoryRecord]) -> bool:
    """Return ``True`` when every record has an identifier and exists remotely."""

    return all(record.is_complete for record in records)


def merge_record(stored: InventoryRecord, incoming: InventoryRecord) -> InventoryRecord:
    """Combine a stored record with an updated copy of it.

    ``created``, ``resmap_created`` and ``updated`` are monotonic. A stored
    identifier is kept when the incoming copy has none, and may only be
    replaced when the incoming copy records it as ``pid_old``.
    """

    if stored.file != incoming.file:
        raise InventoryConflictError(
            f"Cannot merge record '{incoming.file}' into '{stored.file}'", file=stored.file
        )

    pid = incoming.pid or stored.pid
    pid_old = incoming.pid_old or stored.pid_old
    if stored.pid and incoming.pid and stored.pid != incoming.pid:
        if incoming.pid_old != stored.pid:
            raise InventoryConflictError(
                f"{stored.file}: identifier '{stored.pid}' is already assigned; "
                f"refusing to overwrite it with '{incoming.pid}'",
                file=stored.file,
            )

    return replace(
        incoming,
        pid=pid,
        pid_old=pid_old,
        created=stored.created or incoming.created,
        resmap_created=stored.resmap_created or incoming.resmap_created,
        updated=stored.updated or incoming.updated,
    )


def package_order(records: Iterable[InventoryRecord]) -> List[str]:
    """Return package identifiers ordered so children precede their parents."""

    packages: "OrderedDict[str, set]" = OrderedDict()
    rows = list(records)
    for record in rows:
        if record.package and record.package not in packages:
            packages[record.package] = set()
    for record in rows:
        if (
            record.is_metadata
            and record.package
            and record.parent_package
            and record.parent_package in packages
        ):
            packages[record.parent_package].add(record.package)

    ordered: List[str] = []
    done: set = set()
    pending = list(packages)
    while pending:
        ready = [name for name in pending if packages[name] <= done]
        if not ready:
            raise DependencyError(
                f"Packages form a dependency cycle: {', '.join(pending)}", packages=pending
            )
        for name in ready:
            ordered.append(name)
            done.add(name)
        pending = [name for name in pending if name not in done]
    return ordered


def load_inventory_csv(path: Path) -> List[InventoryRecord]:
    """Read and validate an inventory CSV file."""

    resolved = Path(path).expanduser()
    try:
        with resolved.open(newline="", encoding="utf-8") as handle:
            records = [InventoryRecord.from_mapping(row) for row in csv.DictReader(handle)]
    except FileNotFoundError as exc:
        raise PreconditionError(f"Inventory file not found: {resolved}") from exc
    validate_inventory(records)
    logger.info(
        "inventory loaded",
        extra={"stage": "inventory", "inventory_path": str(resolved), "records": len(records)},
    )
    return records


def write_inventory_csv(records: Iterable[InventoryRecord], path: Path) -> Path:
    """Write *records* to *path* using the canonical column names."""

    resolved = Path(path).expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    columns = [item.name for item in fields(InventoryRecord)]
    with resolved.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=columns)
        writer.writeheader()
        for record in records:
            row = record.to_mapping()
            writer.writerow({key: "" if value is None else value for key, value in row.items()})
    return resolved


class InMemoryInventory:
    """Lock-guarded inventory store keeping records in insertion order."""

    def __init__(self, records: Iterable[InventoryRecord] = ()) -> None:
        self._lock = threading.RLock()
        self._rows: "OrderedDict[str, InventoryRecord]" = OrderedDict()
        for record in records:
            if record.file in self._rows:
                raise PreconditionError(f"Inventory contains duplicate file '{record.file}'")
            self._rows[record.file] = record.copy()

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, object]]) -> "InMemoryInventory":
        """Build a store from loosely-typed mappings, validating each row."""

        records = [InventoryRecord.from_mapping(row) for row in rows]
        validate_inventory(records)
        return cls(records)

    @classmethod
    def from_csv(cls, path: Path) -> "InMemoryInventory":
        """Build a store from an inventory CSV file."""

        return cls(load_inventory_csv(path))

    def __len__(self) -> int:
        return len(self._rows)

    def get(self, file: str) -> Optional[InventoryRecord]:
        with self._lock:
            record = self._rows.get(file)
            return record.copy() if record is not None else None

    def records(self) -> List[InventoryRecord]:
        with self._lock:
            return [record.copy() for record in self._rows.values()]

    def package_records(self, package: str) -> List[InventoryRecord]:
        with self._lock:
            return select_package(self._rows.values(), package)

    def child_metadata_records(self, package: str) -> List[InventoryRecord]:
        with self._lock:
            return child_metadata_records(self._rows.values(), package)

    def merge(self, records: Iterable[InventoryRecord]) -> List[InventoryRecord]:
        merged: "OrderedDict[str, InventoryRecord]" = OrderedDict()
        with self._lock:
            # All rows merge or none do, like a database transaction.
            for record in records:
                stored = merged.get(record.file) or self._rows.get(record.file)
                merged[record.file] = record.copy() if stored is None else merge_record(stored, record)
            self._rows.update(merged)
            return [result.copy() for result in merged.values()]

    def mark_created(self, file: str, pid: str) -> bool:
        with self._lock:
            stored = self._rows.get(file)
            if stored is None:
                raise PreconditionError(f"File '{file}' is not in the inventory")
            if stored.created:
                return False
            if stored.pid and stored.pid != pid:
                raise InventoryConflictError(
                    f"{file}: identifier '{stored.pid}' is already assigned", file=file
                )
            self._rows[file] = replace(stored, pid=pid, created=True)
            return True

    def to_csv(self, path: Path) -> Path:
        """Write the current records to *path*."""

        return write_inventory_csv(self.records(), path)
