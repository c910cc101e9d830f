"""Shared fixtures for the package_upload test suite."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, List

import pytest

from ArchiveSync.PackageUpload.inventory import InMemoryInventory, InventoryRecord
from ArchiveSync.PackageUpload.pipeline import PackagingContext
from ArchiveSync.PackageUpload.settings import PackagingSettings, build_settings
from ArchiveSync.PackageUpload.testing import FakeRepositoryClient

# package -> (parent package, {relative file: contents}); the first file is the metadata.
PACKAGE_LAYOUT: Dict[str, tuple] = {
    "child": (
        "parent",
        {
            "child/metadata.xml": b"<eml packageId='child'/>",
            "child/readings.csv": b"t,value\n1,2\n",
        },
    ),
    "parent": (
        None,
        {
            "parent/metadata.xml": b"<eml packageId='parent'/>",
            "parent/site.csv": b"site,lat,lon\nA,1,2\n",
            "parent/notes.txt": b"field notes",
        },
    ),
}


def _rows(base_path: Path) -> List[InventoryRecord]:
    records: List[InventoryRecord] = []
    for package, (parent, files) in PACKAGE_LAYOUT.items():
        for index, (relative, payload) in enumerate(files.items()):
            path = base_path / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
            records.append(
                InventoryRecord(
                    file=f"/{relative}",
                    filename=Path(relative).name,
                    checksum=hashlib.sha256(payload).hexdigest(),
                    size=len(payload),
                    format_id="eml://ecoinformatics.org/eml-2.1.1" if index == 0 else "text/csv",
                    package=package,
                    parent_package=parent,
                    is_metadata=index == 0,
                )
            )
    return records


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    path = tmp_path / "archive"
    path.mkdir()
    return path


@pytest.fixture
def alternate_path(tmp_path: Path) -> Path:
    path = tmp_path / "modified"
    path.mkdir()
    return path


@pytest.fixture
def records(base_path: Path) -> List[InventoryRecord]:
    """Inventory records for a parent package with one child package, files on disk."""

    return _rows(base_path)


@pytest.fixture
def store(records: List[InventoryRecord]) -> InMemoryInventory:
    return InMemoryInventory(records)


@pytest.fixture
def raw_settings(tmp_path: Path, base_path: Path, alternate_path: Path) -> Dict[str, object]:
    return {
        "base_path": str(base_path),
        "alternate_path": str(alternate_path),
        "metadata_identifier_scheme": "UUID",
        "data_identifier_scheme": "UUID",
        "submitter": "uid=archivist,o=NCEAS",
        "rights_holder": "uid=archivist,o=NCEAS",
        "repository": {"base_url": "https://mn.example.org/mn", "token": "token-value"},
        "logging": {"level": "DEBUG", "log_dir": str(tmp_path / "logs")},
        "database": {"db_path": str(tmp_path / "inventory.duckdb")},
    }


@pytest.fixture
def settings(raw_settings: Dict[str, object]) -> PackagingSettings:
    return build_settings(raw_settings, apply_env=False)


@pytest.fixture
def fake_client() -> FakeRepositoryClient:
    return FakeRepositoryClient()


@pytest.fixture
def ctx(fake_client: FakeRepositoryClient, settings: PackagingSettings, tmp_path: Path) -> PackagingContext:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return PackagingContext(client=fake_client, settings=settings, work_dir=work_dir)
