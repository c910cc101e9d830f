# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.database",
#   "purpose": "DuckDB-backed inventory store with migrations, transactions, and compare-and-swap",
#   "sections": [
#     {"id": "migrations", "name": "Schema Migrations", "anchor": "MIG", "kind": "infra"},
#     {"id": "init", "name": "Initialization & Bootstrap", "anchor": "INI", "kind": "api"},
#     {"id": "transactions", "name": "Transaction Boundaries", "anchor": "TXN", "kind": "api"},
#     {"id": "queries", "name": "Query Facades", "anchor": "QRY", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""DuckDB inventory store.

A persistent implementation of
:class:`~ArchiveSync.PackageUpload.inventory.InventoryStore`. The inventory
table keeps one row per file plus an insertion ``position`` so that records
come back in inventory order. All writes run inside ``BEGIN``/``COMMIT``
transactions; merges go through
:func:`~ArchiveSync.PackageUpload.inventory.merge_record` and
:meth:`InventoryDatabase.mark_created` is a conditional ``UPDATE`` so two
runs can never both claim the same object.

Usage::

    with InventoryDatabase(config) as db:
        db.import_csv(Path("inventory.csv"))
        records = db.package_records("pkg-1")
"""

from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Tuple

import duckdb

from .errors import InventoryConflictError, PackageUploadError, PreconditionError
from .inventory import (
    InventoryRecord,
    child_metadata_records,
    merge_record,
    select_package,
    validate_inventory,
    write_inventory_csv,
)
from .settings import DatabaseConfiguration

__all__ = ["InventoryDatabase"]

logger = logging.getLogger(__name__)


# ============================================================================
# Schema & Migrations
# ============================================================================


_MIGRATIONS: List[Tuple[str, str]] = [
    (
        "0001_init",
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS inventory (
            file TEXT PRIMARY KEY,
            position BIGINT NOT NULL,
            filename TEXT NOT NULL,
            checksum TEXT NOT NULL,
            size BIGINT NOT NULL,
            format_id TEXT NOT NULL,
            package TEXT,
            parent_package TEXT,
            is_metadata BOOLEAN NOT NULL DEFAULT FALSE,
            pid TEXT,
            pid_old TEXT,
            created BOOLEAN NOT NULL DEFAULT FALSE,
            resmap_created BOOLEAN NOT NULL DEFAULT FALSE,
            ready BOOLEAN NOT NULL DEFAULT TRUE,
            updated BOOLEAN NOT NULL DEFAULT FALSE
        );

        INSERT OR IGNORE INTO schema_version VALUES ('0001_init', now());
        """,
    ),
]

_COLUMNS: Tuple[str, ...] = (
    "file",
    "filename",
    "checksum",
    "size",
    "format_id",
    "package",
    "parent_package",
    "is_metadata",
    "pid",
    "pid_old",
    "created",
    "resmap_created",
    "ready",
    "updated",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM inventory"
_SELECT_WITH_POSITION = f"SELECT position, {', '.join(_COLUMNS)} FROM inventory"


def _row_to_record(row: Tuple[Any, ...]) -> InventoryRecord:
    return InventoryRecord(**dict(zip(_COLUMNS, row)))


class InventoryDatabase:
    """Transactional inventory store backed by a DuckDB file.

    A single connection is shared and guarded by a lock, so one instance may
    be used from the worker threads of :func:`~ArchiveSync.PackageUpload.pipeline.insert_all`.
    """

    def __init__(self, config: Optional[DatabaseConfiguration] = None) -> None:
        self.config = config or DatabaseConfiguration()
        self._db_path = Path(self.config.db_path).expanduser()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()

    # ========================================================================
    # Initialization & Bootstrap
    # ========================================================================

    def bootstrap(self) -> None:
        """Open the database file and apply pending migrations."""

        if self._connection is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            "opening inventory database",
            extra={"stage": "database", "db_path": str(self._db_path), "read_only": self.config.readonly},
        )

        config_dict = {}
        if self.config.threads is not None:
            config_dict["threads"] = self.config.threads
        if self.config.memory_limit is not None:
            config_dict["memory_limit"] = self.config.memory_limit

        self._connection = duckdb.connect(
            str(self._db_path),
            read_only=self.config.readonly,
            config=config_dict,
        )
        if not self.config.readonly:
            self._apply_migrations()

    def _apply_migrations(self) -> None:
        assert self._connection is not None
        try:
            result = self._connection.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchall()
            current_version = result[0][0] if result else None
        except duckdb.CatalogException:
            current_version = None

        for migration_name, migration_sql in _MIGRATIONS:
            if current_version is None or migration_name > current_version:
                logger.info(
                    "applying migration %s", migration_name, extra={"stage": "database"}
                )
                self._connection.execute(migration_sql)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "InventoryDatabase":
        self.bootstrap()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise PackageUploadError("Inventory database is not open; call bootstrap() first")
        return self._connection

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextlib.contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Transactional context for batch writes."""

        if self.config.readonly:
            raise PackageUploadError("Cannot write to a read-only inventory database")
        with self._lock:
            connection = self.connection
            connection.execute("BEGIN TRANSACTION")
            try:
                yield connection
                connection.execute("COMMIT")
            except Exception as exc:
                connection.execute("ROLLBACK")
                logger.error("transaction rolled back: %s", exc, extra={"stage": "database"})
                raise

    # ========================================================================
    # Query Facades
    # ========================================================================

    def _query(self, sql: str, params: Optional[List[Any]] = None) -> List[InventoryRecord]:
        with self._lock:
            rows = self.connection.execute(sql, params or []).fetchall()
        return [_row_to_record(row) for row in rows]

    def _upsert(self, connection: duckdb.DuckDBPyConnection, record: InventoryRecord, position: int) -> None:
        placeholders = ", ".join("?" for _ in range(len(_COLUMNS) + 1))
        values = [getattr(record, column) for column in _COLUMNS]
        connection.execute(
            f"INSERT OR REPLACE INTO inventory ({', '.join(_COLUMNS)}, position) VALUES ({placeholders})",
            [*values, position],
        )

    def _next_position(self, connection: duckdb.DuckDBPyConnection) -> int:
        row = connection.execute("SELECT COALESCE(MAX(position), -1) + 1 FROM inventory").fetchone()
        return int(row[0]) if row else 0

    def __len__(self) -> int:
        with self._lock:
            row = self.connection.execute("SELECT COUNT(*) FROM inventory").fetchone()
        return int(row[0]) if row else 0

    def get(self, file: str) -> Optional[InventoryRecord]:
        records = self._query(f"{_SELECT} WHERE file = ?", [file])
        return records[0] if records else None

    def records(self) -> List[InventoryRecord]:
        return self._query(f"{_SELECT} ORDER BY position")

    def package_records(self, package: str) -> List[InventoryRecord]:
        return select_package(self._query(f"{_SELECT} WHERE package = ? ORDER BY position", [package]), package)

    def child_metadata_records(self, package: str) -> List[InventoryRecord]:
        rows = self._query(
            f"{_SELECT} WHERE parent_package = ? AND is_metadata ORDER BY position", [package]
        )
        return child_metadata_records(rows, package)

    def insert(self, records: Iterable[InventoryRecord]) -> int:
        """Add new records; existing files raise :class:`PreconditionError`."""

        items = list(records)
        validate_inventory(items)
        with self.transaction() as connection:
            position = self._next_position(connection)
            for record in items:
                exists = connection.execute(
                    "SELECT 1 FROM inventory WHERE file = ?", [record.file]
                ).fetchone()
                if exists:
                    raise PreconditionError(f"Inventory already contains file '{record.file}'")
                self._upsert(connection, record, position)
                position += 1
        return len(items)

    def merge(self, records: Iterable[InventoryRecord]) -> List[InventoryRecord]:
        merged: List[InventoryRecord] = []
        with self.transaction() as connection:
            next_position = self._next_position(connection)
            for record in records:
                row = connection.execute(
                    f"{_SELECT_WITH_POSITION} WHERE file = ?",
                    [record.file],
                ).fetchone()
                if row is None:
                    result, position = record.copy(), next_position
                    next_position += 1
                else:
                    position = int(row[0])
                    result = merge_record(_row_to_record(row[1:]), record)
                self._upsert(connection, result, position)
                merged.append(result.copy())
        return merged

    def mark_created(self, file: str, pid: str) -> bool:
        with self.transaction() as connection:
            claimed = connection.execute(
                """
                UPDATE inventory SET created = TRUE, pid = ?
                WHERE file = ? AND NOT created AND (pid IS NULL OR pid = '' OR pid = ?)
                RETURNING file
                """,
                [pid, file, pid],
            ).fetchall()
            if claimed:
                return True
            row = connection.execute(
                "SELECT created, pid FROM inventory WHERE file = ?", [file]
            ).fetchone()
        if row is None:
            raise PreconditionError(f"File '{file}' is not in the inventory")
        created, stored_pid = row
        if created:
            return False
        raise InventoryConflictError(
            f"{file}: identifier '{stored_pid}' is already assigned", file=file
        )

    def import_csv(self, path: Path, *, replace: bool = False) -> int:
        """Load an inventory CSV with DuckDB's ``read_csv_auto``.

        Rows are validated through :meth:`InventoryRecord.from_mapping`. With
        *replace* the table is emptied first; otherwise rows are merged into
        the existing inventory.
        """

        resolved = Path(path).expanduser()
        if not resolved.is_file():
            raise PreconditionError(f"Inventory file not found: {resolved}")
        literal = str(resolved).replace("'", "''")
        with self._lock:
            relation = self.connection.execute(
                f"SELECT * FROM read_csv_auto('{literal}', header = true, all_varchar = true)"
            )
            columns = [description[0] for description in relation.description]
            rows = relation.fetchall()
            records = [InventoryRecord.from_mapping(dict(zip(columns, row))) for row in rows]
            validate_inventory(records)
            if replace:
                with self.transaction() as connection:
                    connection.execute("DELETE FROM inventory")
            self.merge(records)
        logger.info(
            "inventory imported",
            extra={"stage": "database", "inventory_path": str(resolved), "records": len(records)},
        )
        return len(records)

    def export_csv(self, path: Path) -> Path:
        """Write the inventory to *path* as CSV, in inventory order."""

        return write_inventory_csv(self.records(), path)
