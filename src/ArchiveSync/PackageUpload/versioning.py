"""Update orchestrator: publish a new version of a package's metadata and resource map.

Data objects are never touched. For each of the two artefacts (metadata
first, then the resource map) the node is asked what already exists:

1. the new identifier exists: nothing to do for this artefact;
2. the old identifier does not exist: create the new object outright;
3. otherwise: update the old object, obsoleting it with the new one.

The resource map is always rebuilt from the identifiers rather than patched.
Statements added to the old map by other tools are only carried over when
the caller passes them in as ``extra_statements`` (typically
``filter_packaging_statements(parse_resource_map(path))``).
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import PreconditionError
from .identifiers import generate_resource_map_pid
from .inventory import InventoryRecord, InventoryStore, split_package
from .pipeline import PackagingContext, check_child_packages, build_package_resource_map, publish_resource_map
from .resource_map import StatementLike
from .sysmeta import describe_file, resolve_path
from .upload import publish_file

__all__ = ["update_package", "decide_action", "CREATE", "UPDATE", "SKIP"]

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
SKIP = "skip"


def decide_action(ctx: PackagingContext, new_pid: str, old_pid: str) -> Optional[str]:
    """Return ``SKIP``, ``CREATE`` or ``UPDATE`` for one artefact, or ``None`` on failure."""

    context = {"stage": "update", "pid": new_pid}
    new_exists = ctx.client.object_exists(new_pid)
    if not new_exists.ok:
        logger.error("existence check failed: %s", new_exists.message, extra=context)
        return None
    if new_exists.value:
        logger.info("object %s already exists; skipping", new_pid, extra=context)
        return SKIP

    old_exists = ctx.client.object_exists(old_pid)
    if not old_exists.ok:
        logger.error("existence check failed: %s", old_exists.message, extra={**context, "pid_old": old_pid})
        return None
    if not old_exists.value:
        logger.info(
            "previous object %s not found; creating instead of updating",
            old_pid,
            extra=context,
        )
        return CREATE
    return UPDATE


def _require_identifiers(records: List[InventoryRecord], package: str) -> None:
    for record in records:
        if not record.pid or not record.pid_old:
            raise PreconditionError(
                f"Package '{package}': record '{record.file}' needs both 'pid' and 'pid_old' to be updated"
            )


def _publish_metadata(
    metadata: InventoryRecord, source: Path, action: str, ctx: PackagingContext
) -> bool:
    new_pid = str(metadata.pid)
    old_pid = str(metadata.pid_old)
    context = {"stage": "update", "file": metadata.file, "pid": new_pid}
    with tempfile.TemporaryDirectory(prefix="archivesync-", dir=ctx.work_dir) as tmp:
        working_copy = Path(tmp) / ctx.settings.updated_metadata_file_name
        try:
            shutil.copyfile(source, working_copy)
        except OSError as exc:
            logger.error("copying modified metadata failed: %s", exc, extra=context)
            return False
        if ctx.metadata_rewriter is not None:
            try:
                ctx.metadata_rewriter(working_copy, new_pid)
            except Exception as exc:  # rewriter hooks are caller code
                logger.error(
                    "rewriting metadata identifier failed: %s", exc, extra=context, exc_info=True
                )
                return False
        try:
            sysmeta = describe_file(
                new_pid,
                working_copy,
                format_id=metadata.format_id,
                file_name=ctx.settings.updated_metadata_file_name,
                submitter=ctx.settings.submitter,
                rights_holder=ctx.settings.rights_holder,
                hasher=ctx.hasher,
                policy=ctx.policy,
                obsoletes=old_pid if action == UPDATE else None,
            )
        except (OSError, ValueError) as exc:
            logger.error("metadata descriptor construction failed: %s", exc, extra=context)
            return False
        return publish_file(
            ctx.client,
            working_copy,
            sysmeta,
            obsoletes=old_pid if action == UPDATE else None,
            file=metadata.file,
        )


def update_package(
    store: InventoryStore,
    package: str,
    ctx: PackagingContext,
    extra_statements: Optional[Iterable[StatementLike]] = None,
) -> List[InventoryRecord]:
    """Publish the modified metadata and a rebuilt resource map for *package*.

    Every record must carry ``pid`` (the new identifier) and ``pid_old``.
    The modified metadata document is read from ``alternate_path / file``.

    Returns:
        Copies of the package's records. The metadata record gains
        ``updated``/``created`` when its new version is published and every
        record gains ``resmap_created`` when the new resource map is. An
        artefact whose new identifier already exists is left as it is.
    """

    if not isinstance(package, str) or not package:
        raise PreconditionError("package must be a non-empty string")
    files = store.package_records(package)
    metadata, data = split_package(files, package)
    _require_identifiers(files, package)
    children = check_child_packages(store, package)
    context = {"stage": "update", "package": package}

    if ctx.session_expired():
        return files

    alternate = ctx.settings.alternate_path
    if alternate is None or not Path(alternate).exists():
        logger.error("alternate path %s does not exist; returning", alternate, extra=context)
        return files
    source = resolve_path(Path(alternate), metadata.file)
    if not source.is_file():
        logger.error("modified metadata not found at %s; returning", source, extra=context)
        return files

    logger.info(
        "updating metadata %s -> %s",
        metadata.pid_old,
        metadata.pid,
        extra={**context, "pid": metadata.pid},
    )
    action = decide_action(ctx, str(metadata.pid), str(metadata.pid_old))
    if action is None:
        return files
    if action != SKIP:
        if not _publish_metadata(metadata, source, action, ctx):
            logger.error("metadata publication failed", extra={**context, "pid": metadata.pid})
            return files
        metadata.updated = True
        metadata.created = True

    resource_map = build_package_resource_map(metadata, data, children, ctx, extra_statements)
    old_resmap_pid = generate_resource_map_pid(str(metadata.pid_old))
    action = decide_action(ctx, resource_map.identifier, old_resmap_pid)
    if action is None or action == SKIP:
        return files
    if not publish_resource_map(
        resource_map, ctx, obsoletes=old_resmap_pid if action == UPDATE else None
    ):
        logger.error("resource map publication failed", extra={**context, "pid": resource_map.identifier})
        return files
    for record in files:
        record.resmap_created = True
    logger.info("package updated", extra={**context, "pid": resource_map.identifier})
    return files
