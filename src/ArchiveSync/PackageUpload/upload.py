"""Object upload step: send one file and its descriptor to the repository.

Both helpers return a plain success flag. Remote failures arrive as
:class:`~ArchiveSync.PackageUpload.repository.RemoteResult` values and are
logged here; nothing raises past this module, so the orchestrators only need
to check the flag and halt.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from .inventory import InventoryRecord
from .repository import RemoteResult, RepositoryClient
from .sysmeta import SystemMetadata, resolve_path

__all__ = ["create_object", "publish_file", "log_throughput"]

logger = logging.getLogger(__name__)


def log_throughput(identifier: str, size_bytes: int, elapsed: float, *, file: Optional[str] = None) -> None:
    """Log transfer size and rate for a completed upload."""

    size_mb = size_bytes / (1024 * 1024)
    rate = size_mb / elapsed if elapsed > 0 else float("inf")
    logger.info(
        "uploaded %.3f MB in %.2fs (%.3f MB/s)",
        size_mb,
        elapsed,
        rate,
        extra={
            "stage": "upload",
            "pid": identifier,
            "file": file,
            "size_mb": round(size_mb, 3),
            "elapsed_sec": round(elapsed, 3),
            "throughput_mb_s": None if elapsed <= 0 else round(rate, 3),
        },
    )


def _report_failure(result: RemoteResult[str], identifier: str, file: Optional[str]) -> None:
    logger.error(
        "upload failed (%s): %s",
        result.error.value if result.error else "unknown",
        result.message,
        extra={
            "stage": "upload",
            "pid": identifier,
            "file": file,
            "error_kind": result.error.value if result.error else None,
            "status_code": result.status_code,
        },
    )


def publish_file(
    client: RepositoryClient,
    path: Path,
    sysmeta: SystemMetadata,
    *,
    obsoletes: Optional[str] = None,
    file: Optional[str] = None,
) -> bool:
    """Create (or, with *obsoletes*, update) an object from *path*.

    Used for the inventory's own files as well as artefacts produced during a
    run, such as serialized resource maps.
    """

    identifier = sysmeta.identifier
    resolved = Path(path)
    if not resolved.is_file():
        logger.error(
            "cannot upload missing file %s",
            resolved,
            extra={"stage": "upload", "pid": identifier, "file": file},
        )
        return False

    started = time.perf_counter()
    try:
        if obsoletes:
            result = client.update_object(obsoletes, identifier, sysmeta, resolved)
        else:
            result = client.create_object(identifier, sysmeta, resolved)
    except Exception as exc:  # pragma: no cover - client contract says results, not exceptions
        logger.exception(
            "repository client raised during upload: %s",
            exc,
            extra={"stage": "upload", "pid": identifier, "file": file},
        )
        return False
    elapsed = time.perf_counter() - started

    if not result.ok:
        _report_failure(result, identifier, file)
        return False
    if result.value and result.value != identifier:
        logger.warning(
            "repository acknowledged a different identifier %s",
            result.value,
            extra={"stage": "upload", "pid": identifier, "file": file},
        )
    log_throughput(identifier, sysmeta.size, elapsed, file=file)
    return True


def create_object(
    record: InventoryRecord,
    sysmeta: SystemMetadata,
    base_path: Path,
    client: RepositoryClient,
) -> bool:
    """Upload the file behind *record* under its identifier.

    Must not be called for a record that is already ``created``; a second
    upload under the same identifier is rejected by the node and reported as
    a failure.
    """

    if not record.has_pid:
        logger.error("record has no identifier; upload skipped", extra={"stage": "upload", "file": record.file})
        return False
    path = resolve_path(base_path, record.file)
    logger.info(
        "uploading %s",
        record.filename,
        extra={"stage": "upload", "file": record.file, "pid": record.pid, "package": record.package},
    )
    return publish_file(client, path, sysmeta, file=record.file)
