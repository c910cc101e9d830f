"""Descriptor (system metadata) construction for objects about to be uploaded.

A descriptor records what the repository needs to know about an object
before accepting its bytes: identifier, format, size, checksum, submitter,
rights holder and display file name, plus the access and replication
policies. Descriptors are immutable; the :class:`AccessPolicyDecorator`
returns new instances rather than editing them in place.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .checksums import CHECKSUM_ALGORITHM, Hasher
from .inventory import InventoryRecord
from .settings import PackagingSettings

__all__ = [
    "TYPES_NAMESPACE",
    "PUBLIC_READ_SUBJECT",
    "PUBLIC_READ",
    "AccessRule",
    "ReplicationPolicy",
    "SystemMetadata",
    "AccessPolicyDecorator",
    "resolve_path",
    "create_sysmeta",
    "describe_file",
    "artifact_file_name",
]

logger = logging.getLogger(__name__)

TYPES_NAMESPACE = "http://ns.dataone.org/service/types/v2.0"
PUBLIC_READ_SUBJECT = "public"


@dataclass(frozen=True)
class AccessRule:
    """Permissions granted to one subject."""

    subject: str
    permissions: Tuple[str, ...]


@dataclass(frozen=True)
class ReplicationPolicy:
    """Replication request attached to a descriptor."""

    replication_allowed: bool = True
    number_replicas: int = 3
    preferred_nodes: Tuple[str, ...] = ()
    blocked_nodes: Tuple[str, ...] = ()

    @classmethod
    def disabled(cls) -> "ReplicationPolicy":
        return cls(replication_allowed=False, number_replicas=0)


@dataclass(frozen=True)
class SystemMetadata:
    """Repository-side description of one object."""

    identifier: str
    format_id: str
    size: int
    checksum: str
    submitter: str
    rights_holder: str
    file_name: str
    checksum_algorithm: str = CHECKSUM_ALGORITHM
    access_policy: Tuple[AccessRule, ...] = ()
    replication_policy: ReplicationPolicy = field(default_factory=ReplicationPolicy)
    obsoletes: Optional[str] = None
    serial_version: int = 1

    def to_xml(self) -> bytes:
        """Render the descriptor as a ``systemMetadata`` XML document."""

        ET.register_namespace("d1", TYPES_NAMESPACE)
        root = ET.Element(f"{{{TYPES_NAMESPACE}}}systemMetadata")

        def _child(parent: ET.Element, tag: str, text: Optional[str] = None, **attrs: str) -> ET.Element:
            element = ET.SubElement(parent, tag, attrs)
            if text is not None:
                element.text = text
            return element

        _child(root, "serialVersion", str(self.serial_version))
        _child(root, "identifier", self.identifier)
        _child(root, "formatId", self.format_id)
        _child(root, "size", str(self.size))
        _child(root, "checksum", self.checksum, algorithm=self.checksum_algorithm)
        _child(root, "submitter", self.submitter)
        _child(root, "rightsHolder", self.rights_holder)
        if self.access_policy:
            policy = _child(root, "accessPolicy")
            for rule in self.access_policy:
                allow = _child(policy, "allow")
                _child(allow, "subject", rule.subject)
                for permission in rule.permissions:
                    _child(allow, "permission", permission)
        replication = self.replication_policy
        replication_el = _child(
            root,
            "replicationPolicy",
            replicationAllowed="true" if replication.replication_allowed else "false",
            numberReplicas=str(replication.number_replicas),
        )
        for node in replication.preferred_nodes:
            _child(replication_el, "preferredMemberNode", node)
        for node in replication.blocked_nodes:
            _child(replication_el, "blockedMemberNode", node)
        if self.obsoletes:
            _child(root, "obsoletes", self.obsoletes)
        _child(root, "fileName", self.file_name)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)


PUBLIC_READ = AccessRule(subject=PUBLIC_READ_SUBJECT, permissions=("read",))


class AccessPolicyDecorator:
    """Attach the standard access rules and optionally clear replication."""

    def __init__(
        self, rules: Optional[Iterable[AccessRule]] = None, *, clear_replication: bool = True
    ) -> None:
        self.rules: Tuple[AccessRule, ...] = (
            tuple(rules) if rules is not None else (PUBLIC_READ,)
        )
        self.clear_replication = clear_replication

    @classmethod
    def from_settings(cls, settings: PackagingSettings) -> "AccessPolicyDecorator":
        rules = [
            AccessRule(subject=rule.subject, permissions=tuple(rule.permissions))
            for rule in settings.access_rules
        ]
        return cls(rules, clear_replication=settings.clear_replication_policy)

    def apply_access_rules(self, sysmeta: SystemMetadata) -> SystemMetadata:
        """Return *sysmeta* with the configured rules appended (no duplicates)."""

        policy = list(sysmeta.access_policy)
        for rule in self.rules:
            if rule not in policy:
                policy.append(rule)
        return replace(sysmeta, access_policy=tuple(policy))

    def clear_replication_policy(self, sysmeta: SystemMetadata) -> SystemMetadata:
        """Return *sysmeta* with replication disabled when configured to do so."""

        if not self.clear_replication:
            return sysmeta
        return replace(sysmeta, replication_policy=ReplicationPolicy.disabled())

    def decorate(self, sysmeta: SystemMetadata) -> SystemMetadata:
        return self.apply_access_rules(self.clear_replication_policy(sysmeta))


def resolve_path(base_path: Path, file: str) -> Path:
    """Join an inventory ``file`` value onto *base_path*."""

    return Path(base_path) / file.lstrip("/")


def create_sysmeta(
    record: InventoryRecord,
    base_path: Path,
    submitter: str,
    rights_holder: str,
    policy: Optional[AccessPolicyDecorator] = None,
) -> Optional[SystemMetadata]:
    """Build the descriptor for *record*, or ``None`` when it cannot be built.

    ``None`` means "retry later": the file may not be on disk yet, or the
    record may be missing the identifier it must have been given first.
    """

    path_on_disk = resolve_path(base_path, record.file)
    if not path_on_disk.exists():
        logger.warning(
            "file not found on disk; descriptor not built",
            extra={"stage": "sysmeta", "file": record.file, "path": str(path_on_disk)},
        )
        return None
    if not record.has_pid:
        logger.warning(
            "record has no identifier; descriptor not built",
            extra={"stage": "sysmeta", "file": record.file},
        )
        return None

    decorator = policy or AccessPolicyDecorator()
    try:
        sysmeta = SystemMetadata(
            identifier=str(record.pid),
            format_id=record.format_id,
            size=int(record.size),
            checksum=record.checksum,
            submitter=submitter,
            rights_holder=rights_holder,
            file_name=record.filename,
        )
        return decorator.decorate(sysmeta)
    except (TypeError, ValueError) as exc:
        logger.error(
            "descriptor construction failed: %s",
            exc,
            extra={"stage": "sysmeta", "file": record.file, "pid": record.pid},
        )
        return None


def describe_file(
    identifier: str,
    path: Path,
    *,
    format_id: str,
    file_name: str,
    submitter: str,
    rights_holder: str,
    hasher: Hasher,
    policy: Optional[AccessPolicyDecorator] = None,
    obsoletes: Optional[str] = None,
) -> SystemMetadata:
    """Describe a file produced during the run (resource maps, rewritten metadata)."""

    resolved = Path(path)
    sysmeta = SystemMetadata(
        identifier=identifier,
        format_id=format_id,
        size=resolved.stat().st_size,
        checksum=hasher.checksum(resolved),
        checksum_algorithm=hasher.algorithm,
        submitter=submitter,
        rights_holder=rights_holder,
        file_name=file_name,
        obsoletes=obsoletes,
    )
    return (policy or AccessPolicyDecorator()).decorate(sysmeta)


def artifact_file_name(identifier: str, suffix: str = ".xml") -> str:
    """Return a display file name derived from *identifier*."""

    return identifier.replace(":", "_") + suffix

