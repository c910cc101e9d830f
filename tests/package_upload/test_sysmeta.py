"""Descriptor construction, access policy decoration and XML rendering."""

from __future__ import annotations

import hashlib
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List

import pytest

from ArchiveSync.PackageUpload.checksums import StreamingHasher, sha256_file
from ArchiveSync.PackageUpload.inventory import InventoryRecord
from ArchiveSync.PackageUpload.settings import PackagingSettings
from ArchiveSync.PackageUpload.sysmeta import (
    PUBLIC_READ,
    TYPES_NAMESPACE,
    AccessPolicyDecorator,
    AccessRule,
    ReplicationPolicy,
    SystemMetadata,
    artifact_file_name,
    create_sysmeta,
    describe_file,
)

NS = {"d1": TYPES_NAMESPACE}


def _data_record(records: List[InventoryRecord]) -> InventoryRecord:
    record = next(record for record in records if record.file == "/parent/site.csv")
    record.pid = "urn:uuid:site"
    return record


def test_create_sysmeta_fills_descriptor(records: List[InventoryRecord], base_path: Path) -> None:
    record = _data_record(records)

    sysmeta = create_sysmeta(record, base_path, "uid=sub", "uid=holder")

    assert sysmeta is not None
    assert sysmeta.identifier == "urn:uuid:site"
    assert sysmeta.size == record.size
    assert sysmeta.checksum == record.checksum
    assert sysmeta.checksum_algorithm == "SHA256"
    assert sysmeta.file_name == "site.csv"
    assert sysmeta.access_policy == (PUBLIC_READ,)
    assert sysmeta.replication_policy == ReplicationPolicy.disabled()


def test_create_sysmeta_requires_file_on_disk(records: List[InventoryRecord], tmp_path: Path) -> None:
    record = _data_record(records)

    assert create_sysmeta(record, tmp_path / "elsewhere", "uid=sub", "uid=holder") is None


def test_create_sysmeta_requires_identifier(records: List[InventoryRecord], base_path: Path) -> None:
    record = _data_record(records)
    record.pid = None

    assert create_sysmeta(record, base_path, "uid=sub", "uid=holder") is None


def test_decorator_from_settings_keeps_replication_when_configured(settings: PackagingSettings) -> None:
    configured = settings.model_copy(
        update={"clear_replication_policy": False},
    )
    decorator = AccessPolicyDecorator.from_settings(configured)
    sysmeta = SystemMetadata(
        identifier="x",
        format_id="text/csv",
        size=1,
        checksum="00",
        submitter="s",
        rights_holder="r",
        file_name="x.csv",
    )

    decorated = decorator.decorate(decorator.decorate(sysmeta))

    assert decorated.replication_policy == ReplicationPolicy()
    assert decorated.access_policy == (AccessRule("public", ("read",)),)


def test_sysmeta_xml_document() -> None:
    sysmeta = AccessPolicyDecorator().decorate(
        SystemMetadata(
            identifier="resource_map_urn:uuid:1",
            format_id="http://www.openarchives.org/ore/terms",
            size=42,
            checksum="ff",
            submitter="uid=sub",
            rights_holder="uid=holder",
            file_name="resource_map_urn_uuid_1.xml",
            obsoletes="resource_map_urn:uuid:0",
        )
    )

    root = ET.fromstring(sysmeta.to_xml())

    assert root.tag == f"{{{TYPES_NAMESPACE}}}systemMetadata"
    assert root.findtext("identifier") == "resource_map_urn:uuid:1"
    assert root.find("checksum").attrib["algorithm"] == "SHA256"  # type: ignore[union-attr]
    assert root.findtext("accessPolicy/allow/subject") == "public"
    assert root.find("replicationPolicy").attrib["replicationAllowed"] == "false"  # type: ignore[union-attr]
    assert root.findtext("obsoletes") == "resource_map_urn:uuid:0"


def test_describe_file_hashes_generated_content(tmp_path: Path) -> None:
    path = tmp_path / "map.xml"
    path.write_bytes(b"<rdf/>")

    sysmeta = describe_file(
        "resource_map_urn:uuid:1",
        path,
        format_id="http://www.openarchives.org/ore/terms",
        file_name=artifact_file_name("resource_map_urn:uuid:1"),
        submitter="s",
        rights_holder="r",
        hasher=StreamingHasher(),
    )

    assert sysmeta.checksum == hashlib.sha256(b"<rdf/>").hexdigest() == sha256_file(path)
    assert sysmeta.size == 6
    assert sysmeta.file_name == "resource_map_urn_uuid_1.xml"


def test_streaming_hasher_algorithms(tmp_path: Path) -> None:
    path = tmp_path / "blob.bin"
    path.write_bytes(b"x" * 10)

    assert StreamingHasher("md5", chunk_size=3).checksum(path) == hashlib.md5(b"x" * 10).hexdigest()
    assert StreamingHasher("sha1").algorithm == "SHA-1"
    with pytest.raises(ValueError):
        StreamingHasher("crc32")
