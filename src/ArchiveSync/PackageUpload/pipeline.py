# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.pipeline",
#   "purpose": "Package orchestrator: insert single files, whole packages, and every ready package",
#   "sections": [
#     {"id": "context", "name": "PackagingContext", "anchor": "CTX", "kind": "api"},
#     {"id": "steps", "name": "Record Steps", "anchor": "STP", "kind": "helpers"},
#     {"id": "insert-file", "name": "insert_file", "anchor": "function-insert-file", "kind": "function"},
#     {"id": "insert-package", "name": "insert_package", "anchor": "function-insert-package", "kind": "function"},
#     {"id": "insert-all", "name": "insert_all", "anchor": "function-insert-all", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Package orchestrator.

A package moves through these states, one step at a time::

    NoMetadataId -> MetadataDescribed -> MetadataUploaded
        -> DataUploading(k of n) -> DataComplete
        -> ResourceMapBuilt -> ResourceMapUploaded

Any step may stop short of ``ResourceMapUploaded``; that is the normal
"resume later" outcome. The orchestrators never persist anything
themselves. They read copies of the records from an
:class:`~ArchiveSync.PackageUpload.inventory.InventoryStore`, advance them,
and return them; the caller merges the returned records back into the store
(``store.merge``) before the next invocation. :func:`insert_all` does that
merge itself.

Precondition violations raise :class:`~ArchiveSync.PackageUpload.errors.PreconditionError`
before any remote call. Remote failures are logged and reflected only in the
returned flags.
"""

from __future__ import annotations

import logging
import tempfile
from concurrent import futures
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .checksums import Hasher, StreamingHasher
from .errors import DependencyError, InventoryConflictError, PackageUploadError, PreconditionError
from .identifiers import generate_resource_map_pid, get_or_create_pid
from .inventory import (
    InventoryRecord,
    InventoryStore,
    package_is_complete,
    package_order,
    split_package,
)
from .repository import RepositoryClient
from .resource_map import (
    RESOURCE_MAP_FORMAT_ID,
    ResourceMap,
    Serializer,
    StatementLike,
    generate_resource_map,
    serialize_resource_map,
)
from .settings import PackagingSettings
from .sysmeta import AccessPolicyDecorator, artifact_file_name, create_sysmeta, describe_file
from .upload import create_object, publish_file

__all__ = [
    "MetadataRewriter",
    "PackagingContext",
    "insert_file",
    "insert_package",
    "insert_all",
    "check_child_packages",
    "build_package_resource_map",
    "publish_resource_map",
]

logger = logging.getLogger(__name__)

MetadataRewriter = Callable[[Path, str], None]

RESOURCE_MAP_PAYLOAD_NAME = "resource_map.xml"


# ============================================================================
# PackagingContext (CTX)
# ============================================================================


@dataclass
class PackagingContext:
    """Collaborators shared by every orchestrator call.

    Attributes:
        client: Repository node client; constructed by the caller.
        settings: Resolved packaging settings.
        hasher: Digest used for artefacts produced during a run.
        policy: Access/replication decorator; built from *settings* when omitted.
        serializer: Renders a resource map to bytes.
        metadata_rewriter: Hook that writes a new identifier into a metadata
            document in place. Used when publishing a new metadata version.
        work_dir: Parent directory for temporary files; system default when omitted.
    """

    client: RepositoryClient
    settings: PackagingSettings
    hasher: Hasher = field(default_factory=StreamingHasher)
    policy: Optional[AccessPolicyDecorator] = None
    serializer: Serializer = serialize_resource_map
    metadata_rewriter: Optional[MetadataRewriter] = None
    work_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.policy is None:
            self.policy = AccessPolicyDecorator.from_settings(self.settings)

    @property
    def base_path(self) -> Path:
        return Path(self.settings.base_path)

    def scheme_for(self, record: InventoryRecord) -> str:
        if record.is_metadata:
            return self.settings.metadata_identifier_scheme
        return self.settings.data_identifier_scheme

    def session_expired(self) -> bool:
        if self.client.is_token_expired():
            logger.error(
                "repository token is expired; returning records unmodified",
                extra={"stage": "auth"},
            )
            return True
        return False


# ============================================================================
# Record Steps (STP)
# ============================================================================


def _process_record(record: InventoryRecord, ctx: PackagingContext) -> bool:
    """Resolve, describe and upload one record in place; ``True`` on success."""

    context = {"stage": "insert", "file": record.file, "package": record.package}
    pid = get_or_create_pid(record, ctx.client, scheme=ctx.scheme_for(record))
    if not pid:
        logger.warning("identifier resolution failed; stopping", extra=context)
        return False
    record.pid = pid

    sysmeta = create_sysmeta(
        record,
        ctx.base_path,
        ctx.settings.submitter,
        ctx.settings.rights_holder,
        policy=ctx.policy,
    )
    if sysmeta is None:
        logger.warning("descriptor construction failed; stopping", extra={**context, "pid": pid})
        return False

    if not create_object(record, sysmeta, ctx.base_path, ctx.client):
        logger.warning("object creation failed; stopping", extra={**context, "pid": pid})
        return False
    record.created = True
    return True


def check_child_packages(store: InventoryStore, package: str) -> List[InventoryRecord]:
    """Return the child metadata records of *package*, refusing if any is incomplete."""

    children = store.child_metadata_records(package)
    pending = sorted({str(child.package) for child in children if not child.is_complete})
    if pending:
        raise DependencyError(
            f"Package '{package}' has child packages that are not created yet: "
            f"{', '.join(pending)}. Insert those packages first.",
            packages=pending,
        )
    return children


def build_package_resource_map(
    metadata: InventoryRecord,
    data: Sequence[InventoryRecord],
    children: Sequence[InventoryRecord],
    ctx: PackagingContext,
    extra_statements: Optional[Iterable[StatementLike]] = None,
) -> ResourceMap:
    """Build the resource map for a package whose records all carry identifiers."""

    return generate_resource_map(
        str(metadata.pid),
        data_pids=[str(record.pid) for record in data],
        child_pids=[generate_resource_map_pid(str(child.pid)) for child in children],
        extra_statements=extra_statements,
        resolve_base=ctx.settings.resolve_base,
    )


def publish_resource_map(
    resource_map: ResourceMap,
    ctx: PackagingContext,
    *,
    obsoletes: Optional[str] = None,
) -> bool:
    """Serialize, describe and upload *resource_map*; ``True`` on success."""

    context = {"stage": "resource_map", "pid": resource_map.identifier}
    file_name = artifact_file_name(resource_map.identifier)
    try:
        payload = ctx.serializer(resource_map)
    except (ValueError, TypeError) as exc:
        logger.error("resource map serialization failed: %s", exc, extra=context)
        return False

    with tempfile.TemporaryDirectory(prefix="archivesync-", dir=ctx.work_dir) as tmp:
        # Identifiers such as "doi:10.5065/X" contain "/", so the payload gets a fixed name.
        path = Path(tmp) / RESOURCE_MAP_PAYLOAD_NAME
        try:
            path.write_bytes(payload)
            sysmeta = describe_file(
                resource_map.identifier,
                path,
                format_id=RESOURCE_MAP_FORMAT_ID,
                file_name=file_name,
                submitter=ctx.settings.submitter,
                rights_holder=ctx.settings.rights_holder,
                hasher=ctx.hasher,
                policy=ctx.policy,
                obsoletes=obsoletes,
            )
        except (OSError, ValueError) as exc:
            logger.error("resource map descriptor construction failed: %s", exc, extra=context)
            return False
        logger.info(
            "publishing resource map (%d statements, %d members)",
            len(resource_map.statements),
            len(resource_map.aggregated_identifiers),
            extra=context,
        )
        return publish_file(ctx.client, path, sysmeta, obsoletes=obsoletes)


# ============================================================================
# insert_file
# ============================================================================


def insert_file(store: InventoryStore, file: str, ctx: PackagingContext) -> List[InventoryRecord]:
    """Resolve, describe and upload a single inventory file.

    Returns a one-element list holding the advanced copy of the record.
    """

    if not isinstance(file, str) or not file:
        raise PreconditionError("file must be a non-empty string")
    record = store.get(file)
    if record is None:
        raise PreconditionError(f"File '{file}' is not in the inventory")

    if ctx.session_expired():
        return [record]
    if record.created:
        logger.info(
            "file already created; nothing to do",
            extra={"stage": "insert", "file": file, "pid": record.pid},
        )
        return [record]

    logger.info(
        "using identifier scheme %s",
        ctx.scheme_for(record),
        extra={"stage": "insert", "file": file},
    )
    _process_record(record, ctx)
    return [record]


# ============================================================================
# insert_package
# ============================================================================


def insert_package(
    store: InventoryStore,
    package: str,
    ctx: PackagingContext,
    extra_statements: Optional[Iterable[StatementLike]] = None,
) -> List[InventoryRecord]:
    """Drive one package as far as it will go and return its records.

    Args:
        store: Inventory the package is read from; not written to.
        package: Package identifier.
        ctx: Shared collaborators.
        extra_statements: Statements merged into the generated resource map.

    Returns:
        Copies of the package's records, reflecting how far processing got.

    Raises:
        PreconditionError: The package has no records or not exactly one
            metadata record.
        DependencyError: A child package is not fully created yet.
    """

    if not isinstance(package, str) or not package:
        raise PreconditionError("package must be a non-empty string")
    files = store.package_records(package)
    metadata, data = split_package(files, package)
    children = check_child_packages(store, package)
    context = {"stage": "insert", "package": package}

    if ctx.session_expired():
        return files
    if package_is_complete(files) and all(record.resmap_created for record in files):
        logger.info("package already inserted; nothing to do", extra=context)
        return files

    if metadata.created:
        logger.info("metadata already created; skipping", extra={**context, "pid": metadata.pid})
    elif not _process_record(metadata, ctx):
        return files

    if all(record.created for record in data):
        logger.info("all data objects already created; skipping", extra=context)
    for index, record in enumerate(data, start=1):
        if record.created:
            logger.debug(
                "data object %s already created; moving on",
                record.filename,
                extra={**context, "file": record.file},
            )
            continue
        logger.info(
            "processing data object %d of %d",
            index,
            len(data),
            extra={**context, "file": record.file},
        )
        if not _process_record(record, ctx):
            return files

    if not package_is_complete(files):
        logger.warning(
            "not every record has an identifier and is created; resource map skipped",
            extra=context,
        )
        return files

    resource_map = build_package_resource_map(metadata, data, children, ctx, extra_statements)
    logger.info(
        "resource map identifier is %s",
        resource_map.identifier,
        extra={**context, "pid": resource_map.identifier},
    )
    created = publish_resource_map(resource_map, ctx)
    for record in files:
        record.resmap_created = created
    if not created:
        logger.error("resource map upload failed", extra={**context, "pid": resource_map.identifier})
    return files


# ============================================================================
# insert_all
# ============================================================================


def _needs_work(records: Sequence[InventoryRecord]) -> bool:
    return not (package_is_complete(records) and all(record.resmap_created for record in records))


def _children_complete(store: InventoryStore, package: str) -> bool:
    # Stricter than check_child_packages: the whole child package, map included.
    for child in store.child_metadata_records(package):
        if _needs_work(store.package_records(str(child.package))):
            return False
    return True


def _create_executor(workers: int) -> Optional[futures.Executor]:
    if workers <= 1:
        return None
    return futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="archivesync-package")


def _run_package(store: InventoryStore, package: str, ctx: PackagingContext) -> Optional[List[InventoryRecord]]:
    try:
        return insert_package(store, package, ctx)
    except PackageUploadError as exc:
        logger.error("package skipped: %s", exc, extra={"stage": "insert", "package": package})
        return None


def _persist_rows(store: InventoryStore, package: str, records: Sequence[InventoryRecord]) -> List[InventoryRecord]:
    """Persist *records* one row at a time, claiming each uploaded row with ``mark_created``."""

    for record in records:
        context = {"stage": "insert", "package": package, "file": record.file, "pid": record.pid}
        try:
            if record.created and record.pid and not store.mark_created(record.file, str(record.pid)):
                logger.warning("row was already marked created by another writer", extra=context)
            store.merge([record])
        except InventoryConflictError as exc:
            logger.error("row conflicts with a concurrent update; stored row kept: %s", exc, extra=context)
    return store.package_records(package)


def _persist(store: InventoryStore, package: str, records: Sequence[InventoryRecord]) -> List[InventoryRecord]:
    try:
        return store.merge(records)
    except InventoryConflictError as exc:
        logger.error(
            "package merge conflicts with a concurrent update; persisting row by row: %s",
            exc,
            extra={"stage": "insert", "package": package},
        )
    return _persist_rows(store, package, records)


def insert_all(
    store: InventoryStore,
    ctx: PackagingContext,
    *,
    workers: int = 1,
    packages: Optional[Iterable[str]] = None,
) -> Dict[str, List[InventoryRecord]]:
    """Insert every ready package, children before parents.

    Packages are processed in dependency waves; packages within a wave do not
    depend on each other and run on a thread pool when ``workers > 1``. Results
    are merged into *store* after every wave, one package at a time. When a
    package's merge conflicts with a concurrent writer its rows are persisted
    individually, so a conflict never discards the uploads of other rows or
    packages. A parent whose children did not complete is left for the next
    invocation.

    Returns:
        Mapping of package identifier to the records stored after the merge.
    """

    if ctx.session_expired():
        return {}

    order = package_order(store.records())
    wanted = set(packages) if packages is not None else None
    remaining: List[str] = []
    for package in order:
        if wanted is not None and package not in wanted:
            continue
        records = store.package_records(package)
        if not all(record.ready for record in records):
            logger.info("package not ready; skipped", extra={"stage": "insert", "package": package})
            continue
        if _needs_work(records):
            remaining.append(package)

    results: Dict[str, List[InventoryRecord]] = {}
    executor = _create_executor(workers)
    try:
        while remaining:
            wave = [package for package in remaining if _children_complete(store, package)]
            if not wave:
                logger.warning(
                    "deferring %d package(s) until their children are created",
                    len(remaining),
                    extra={"stage": "insert", "packages": remaining},
                )
                break
            logger.info("inserting wave of %d package(s)", len(wave), extra={"stage": "insert"})
            if executor is None:
                outcomes = [(package, _run_package(store, package, ctx)) for package in wave]
            else:
                submitted = {
                    package: executor.submit(_run_package, store, package, ctx) for package in wave
                }
                outcomes = [(package, future.result()) for package, future in submitted.items()]
            for package, records in outcomes:
                if records is not None:
                    results[package] = _persist(store, package, records)
            remaining = [package for package in remaining if package not in wave]
    finally:
        if executor is not None:
            executor.shutdown(wait=True)
    return results
