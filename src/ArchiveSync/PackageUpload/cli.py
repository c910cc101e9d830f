# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.cli",
#   "purpose": "Typer command-line front end for inventory import, insertion, update, and resource maps",
#   "sections": [
#     {"id": "setup", "name": "Setup & Runtime", "anchor": "IMP", "kind": "infra"},
#     {"id": "commands", "name": "CLI Commands", "anchor": "CMDS", "kind": "commands"}
#   ]
# }
# === /NAVMAP ===

"""Command-line interface for package uploads.

Example:
    $ archivesync import-inventory inventory.csv --db inventory.duckdb
    $ archivesync order --db inventory.duckdb
    $ archivesync insert-all --config etc/environment.yml --workers 4
    $ archivesync update-package pkg-1 --old-resource-map old_map.xml
"""

from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Dict, Generator, List, NoReturn, Optional, Tuple

import typer

from .database import InventoryDatabase
from .errors import PackageUploadError
from .inventory import InventoryRecord, package_order
from .logging_utils import setup_logging
from .pipeline import PackagingContext, insert_all, insert_file, insert_package
from .repository import MemberNodeClient
from .resource_map import filter_packaging_statements, generate_resource_map, parse_resource_map
from .settings import DEFAULT_CONFIG_PATH, DEFAULT_RESOLVE_BASE, DatabaseConfiguration, load_settings
from .versioning import update_package

# ============================================================================
# SETUP (IMP)
# ============================================================================

app = typer.Typer(help="Assemble inventories into data packages and upload them to a repository node")
logger = logging.getLogger(__name__)

_CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Environment settings file (YAML)")
_DB_OPTION = typer.Option(None, "--db", help="DuckDB inventory file; overrides the settings file")


def _summarise(records: List[InventoryRecord]) -> List[Dict[str, object]]:
    return [
        {
            "file": record.file,
            "package": record.package,
            "pid": record.pid,
            "created": record.created,
            "resmap_created": record.resmap_created,
            "updated": record.updated,
        }
        for record in records
    ]


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(exc: Exception) -> NoReturn:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(1)


def _open_database(db: Optional[Path], config: Optional[DatabaseConfiguration] = None) -> InventoryDatabase:
    database_config = config.model_copy() if config is not None else DatabaseConfiguration()
    if db is not None:
        database_config.db_path = db
    database = InventoryDatabase(database_config)
    database.bootstrap()
    return database


@contextlib.contextmanager
def _runtime(config: Path, db: Optional[Path]) -> Generator[Tuple[PackagingContext, InventoryDatabase], None, None]:
    """Load settings, configure logging, and open the client and the inventory."""

    settings = load_settings(config)
    setup_logging(
        level=settings.logging.level,
        retention_days=settings.logging.retention_days,
        max_log_size_mb=settings.logging.max_log_size_mb,
        log_dir=settings.logging.log_dir,
    )
    database = _open_database(db, settings.database)
    client = MemberNodeClient.from_settings(settings.repository)
    try:
        yield PackagingContext(client=client, settings=settings), database
    finally:
        client.close()
        database.close()


# ============================================================================
# CLI COMMANDS (CMDS)
# ============================================================================


@app.command("import-inventory")
def import_inventory(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Inventory CSV file"),
    db: Optional[Path] = _DB_OPTION,
    replace: bool = typer.Option(False, "--replace", help="Empty the inventory before importing"),
) -> None:
    """Import an inventory CSV into the DuckDB inventory."""

    try:
        database = _open_database(db)
        try:
            count = database.import_csv(csv_path, replace=replace)
        finally:
            database.close()
    except PackageUploadError as exc:
        _fail(exc)
    typer.echo(f"Imported {count} record(s)")


@app.command("export-inventory")
def export_inventory(
    output: Path = typer.Argument(..., dir_okay=False, help="Destination CSV file"),
    db: Optional[Path] = _DB_OPTION,
) -> None:
    """Write the DuckDB inventory back out as CSV."""

    try:
        database = _open_database(db)
        try:
            database.export_csv(output)
        finally:
            database.close()
    except PackageUploadError as exc:
        _fail(exc)
    typer.echo(f"Wrote {output}")


@app.command("order")
def order(db: Optional[Path] = _DB_OPTION) -> None:
    """Print packages in insertion order (children first)."""

    try:
        database = _open_database(db)
        try:
            packages = package_order(database.records())
        finally:
            database.close()
    except PackageUploadError as exc:
        _fail(exc)
    for package in packages:
        typer.echo(package)


@app.command("insert-file")
def insert_file_command(
    file: str = typer.Argument(..., help="Inventory 'file' value"),
    config: Path = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
) -> None:
    """Upload a single file from the inventory."""

    try:
        with _runtime(config, db) as (ctx, database):
            records = database.merge(insert_file(database, file, ctx))
    except PackageUploadError as exc:
        _fail(exc)
    _echo_json(_summarise(records))


@app.command("insert-package")
def insert_package_command(
    package: str = typer.Argument(..., help="Package identifier"),
    config: Path = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
) -> None:
    """Upload one package: metadata, data objects, then its resource map."""

    try:
        with _runtime(config, db) as (ctx, database):
            records = database.merge(insert_package(database, package, ctx))
    except PackageUploadError as exc:
        _fail(exc)
    _echo_json(_summarise(records))


@app.command("insert-all")
def insert_all_command(
    config: Path = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
    workers: int = typer.Option(1, "--workers", "-w", min=1, help="Packages processed in parallel"),
) -> None:
    """Upload every ready package, children before parents."""

    try:
        with _runtime(config, db) as (ctx, database):
            results = insert_all(database, ctx, workers=workers)
    except PackageUploadError as exc:
        _fail(exc)
    _echo_json({package: _summarise(records) for package, records in results.items()})


@app.command("update-package")
def update_package_command(
    package: str = typer.Argument(..., help="Package identifier"),
    config: Path = _CONFIG_OPTION,
    db: Optional[Path] = _DB_OPTION,
    old_resource_map: Optional[Path] = typer.Option(
        None,
        "--old-resource-map",
        exists=True,
        dir_okay=False,
        help="Previous resource map whose non-packaging statements are carried over",
    ),
) -> None:
    """Publish new versions of a package's metadata and resource map."""

    extra = None
    if old_resource_map is not None:
        extra = filter_packaging_statements(parse_resource_map(old_resource_map))
        typer.echo(f"Carrying over {len(extra)} statement(s) from {old_resource_map}", err=True)
    try:
        with _runtime(config, db) as (ctx, database):
            records = database.merge(update_package(database, package, ctx, extra_statements=extra))
    except PackageUploadError as exc:
        _fail(exc)
    _echo_json(_summarise(records))


@app.command("resource-map")
def resource_map_command(
    metadata_pid: str = typer.Argument(..., help="Identifier of the metadata object"),
    data: List[str] = typer.Option([], "--data", "-d", help="Data object identifier (repeatable)"),
    child: List[str] = typer.Option([], "--child", help="Child resource map identifier (repeatable)"),
    resolve_base: str = typer.Option(DEFAULT_RESOLVE_BASE, "--resolve-base", help="Resolve service base URL"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write RDF/XML here instead of stdout"),
) -> None:
    """Generate a resource map without uploading it."""

    try:
        resource_map = generate_resource_map(
            metadata_pid, data_pids=data, child_pids=child, resolve_base=resolve_base
        )
    except PackageUploadError as exc:
        _fail(exc)
    payload = resource_map.serialize()
    if output is None:
        typer.echo(payload.decode("utf-8"))
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(payload)
    typer.echo(f"Wrote resource map {resource_map.identifier} to {output}")


if __name__ == "__main__":  # pragma: no cover
    app()
