"""Update orchestrator: create, update and skip decisions per artefact."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import List

import pytest

from ArchiveSync.PackageUpload import versioning
from ArchiveSync.PackageUpload.errors import PreconditionError
from ArchiveSync.PackageUpload.inventory import InMemoryInventory, InventoryRecord
from ArchiveSync.PackageUpload.pipeline import PackagingContext
from ArchiveSync.PackageUpload.resource_map import RESOURCE_MAP_FORMAT_ID, Statement
from ArchiveSync.PackageUpload.testing import FakeRepositoryClient
from ArchiveSync.PackageUpload.versioning import CREATE, SKIP, UPDATE, decide_action, update_package

MODIFIED = b"<eml packageId='child' revision='2'/>"
PROV_DERIVED = "http://www.w3.org/ns/prov#wasDerivedFrom"


class UnreadableHasher:
    algorithm = "SHA-256"

    def checksum(self, path: Path) -> str:
        raise PermissionError(13, "Permission denied", str(path))


@pytest.fixture
def versioned(store: InMemoryInventory, alternate_path: Path) -> InMemoryInventory:
    """Child package with new and old identifiers and a modified metadata file."""

    pids = {
        "/child/metadata.xml": ("urn:uuid:meta-v2", "urn:uuid:meta-v1"),
        "/child/readings.csv": ("urn:uuid:readings", "urn:uuid:readings"),
    }
    store.merge(
        replace(store.get(file), pid=pid, pid_old=pid_old, created=True)  # type: ignore[type-var]
        for file, (pid, pid_old) in pids.items()
    )
    target = alternate_path / "child/metadata.xml"
    target.parent.mkdir(parents=True)
    target.write_bytes(MODIFIED)
    return store


def _records_by_file(records: List[InventoryRecord]) -> dict:
    return {record.file: record for record in records}


def test_decide_action(ctx: PackagingContext, fake_client: FakeRepositoryClient) -> None:
    fake_client.seed(["new", "old"])
    assert decide_action(ctx, "new", "old") == SKIP
    assert decide_action(ctx, "newer", "old") == UPDATE
    assert decide_action(ctx, "newer", "missing") == CREATE
    fake_client.unreachable.add("flaky")
    assert decide_action(ctx, "flaky", "old") is None


def test_update_obsoletes_previous_versions(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    fake_client.seed(["urn:uuid:meta-v1", "resource_map_urn:uuid:meta-v1"])

    records = _records_by_file(update_package(versioned, "child", ctx))

    metadata = records["/child/metadata.xml"]
    assert metadata.updated and metadata.created
    assert all(record.resmap_created for record in records.values())
    assert not records["/child/readings.csv"].updated

    meta_call, resmap_call = fake_client.uploads
    assert (meta_call.method, meta_call.identifier, meta_call.new_identifier) == (
        "update",
        "urn:uuid:meta-v1",
        "urn:uuid:meta-v2",
    )
    assert meta_call.payload == MODIFIED
    assert meta_call.sysmeta is not None
    assert meta_call.sysmeta.obsoletes == "urn:uuid:meta-v1"
    assert meta_call.sysmeta.file_name == "science_metadata.xml"
    assert meta_call.sysmeta.format_id == metadata.format_id

    assert (resmap_call.method, resmap_call.identifier, resmap_call.new_identifier) == (
        "update",
        "resource_map_urn:uuid:meta-v1",
        "resource_map_urn:uuid:meta-v2",
    )
    assert resmap_call.sysmeta is not None
    assert resmap_call.sysmeta.format_id == RESOURCE_MAP_FORMAT_ID
    assert all(call.identifier != "urn:uuid:readings" for call in fake_client.uploads)


def test_missing_previous_versions_are_created(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    records = update_package(versioned, "child", ctx)

    assert [(call.method, call.identifier) for call in fake_client.uploads] == [
        ("create", "urn:uuid:meta-v2"),
        ("create", "resource_map_urn:uuid:meta-v2"),
    ]
    assert fake_client.uploads[0].sysmeta.obsoletes is None  # type: ignore[union-attr]
    assert all(record.resmap_created for record in records)


def test_published_versions_are_skipped(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    fake_client.seed(["urn:uuid:meta-v2", "resource_map_urn:uuid:meta-v2"])

    records = update_package(versioned, "child", ctx)

    assert fake_client.uploads == []
    assert records == versioned.package_records("child")


def test_metadata_rewriter_sees_working_copy(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient, alternate_path: Path
) -> None:
    seen = []

    def rewrite(path: Path, pid: str) -> None:
        seen.append((path.name, pid))
        path.write_text(f"<eml packageId='{pid}'/>", encoding="utf-8")

    ctx.metadata_rewriter = rewrite
    update_package(versioned, "child", ctx)

    assert seen == [("science_metadata.xml", "urn:uuid:meta-v2")]
    assert fake_client.uploads[0].payload == b"<eml packageId='urn:uuid:meta-v2'/>"
    assert (alternate_path / "child/metadata.xml").read_bytes() == MODIFIED


def test_rewriter_failure_stops_update(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    def broken(path: Path, pid: str) -> None:
        raise ValueError("no packageId attribute")

    ctx.metadata_rewriter = broken
    records = update_package(versioned, "child", ctx)

    assert fake_client.uploads == []
    assert not any(record.updated or record.resmap_created for record in records)


def test_unexpected_rewriter_error_stops_update(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    def broken(path: Path, pid: str) -> None:
        raise RuntimeError("parser crashed")

    ctx.metadata_rewriter = broken
    records = update_package(versioned, "child", ctx)

    assert fake_client.uploads == []
    assert records == versioned.package_records("child")


def test_unreadable_modified_metadata_stops_update(
    versioned: InMemoryInventory,
    ctx: PackagingContext,
    fake_client: FakeRepositoryClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def denied(source: Path, target: Path) -> None:
        raise PermissionError(13, "Permission denied", str(source))

    monkeypatch.setattr(versioning.shutil, "copyfile", denied)

    records = update_package(versioned, "child", ctx)

    assert fake_client.uploads == []
    assert records == versioned.package_records("child")


def test_hashing_failure_stops_update(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    ctx.hasher = UnreadableHasher()

    records = update_package(versioned, "child", ctx)

    assert fake_client.uploads == []
    assert not any(record.updated or record.resmap_created for record in records)


def test_metadata_failure_leaves_resource_map_alone(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    fake_client.fail_on.add("urn:uuid:meta-v2")

    records = update_package(versioned, "child", ctx)

    assert [call.identifier for call in fake_client.uploads] == ["urn:uuid:meta-v2"]
    assert not any(record.updated or record.resmap_created for record in records)


def test_unreachable_node_returns_records_unchanged(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    fake_client.unreachable.add("urn:uuid:meta-v2")

    records = update_package(versioned, "child", ctx)

    assert records == versioned.package_records("child")
    assert fake_client.uploads == []


def test_missing_modified_metadata(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient, alternate_path: Path
) -> None:
    (alternate_path / "child/metadata.xml").unlink()

    assert update_package(versioned, "child", ctx) == versioned.package_records("child")
    assert fake_client.calls == []

    ctx.settings = ctx.settings.model_copy(update={"alternate_path": None})
    assert update_package(versioned, "child", ctx) == versioned.package_records("child")
    assert fake_client.calls == []


def test_records_need_both_identifiers(
    store: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    with pytest.raises(PreconditionError):
        update_package(store, "child", ctx)
    assert fake_client.calls == []


def test_expired_session_is_a_no_op(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    fake_client.token_expired = True

    assert update_package(versioned, "child", ctx) == versioned.package_records("child")
    assert fake_client.calls == []


def test_extra_statements_are_carried_into_new_map(
    versioned: InMemoryInventory, ctx: PackagingContext, fake_client: FakeRepositoryClient
) -> None:
    extra = Statement(
        "https://cn.dataone.org/cn/v2/resolve/urn%3Auuid%3Areadings",
        PROV_DERIVED,
        "https://cn.dataone.org/cn/v2/resolve/urn%3Auuid%3Araw",
    )

    update_package(versioned, "child", ctx, extra_statements=[extra])

    payload = fake_client.uploads[-1].payload or b""
    assert b"wasDerivedFrom" in payload
    assert b"urn%3Auuid%3Araw" in payload
