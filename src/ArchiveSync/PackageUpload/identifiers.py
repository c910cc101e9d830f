"""Identifier resolution: reuse an assigned identifier or mint a new one."""

from __future__ import annotations

import logging
import uuid

from .inventory import InventoryRecord
from .repository import RepositoryClient
from .settings import UUID_SCHEME

__all__ = [
    "RESOURCE_MAP_PREFIX",
    "UUID_PREFIX",
    "get_or_create_pid",
    "generate_resource_map_pid",
    "mint_uuid",
]

logger = logging.getLogger(__name__)

RESOURCE_MAP_PREFIX = "resource_map_"
UUID_PREFIX = "urn:uuid:"


def mint_uuid() -> str:
    """Return a new random ``urn:uuid:`` identifier."""

    return f"{UUID_PREFIX}{uuid.uuid4()}"


def get_or_create_pid(
    record: InventoryRecord, client: RepositoryClient, scheme: str = UUID_SCHEME
) -> str:
    """Return the record's identifier, minting one under *scheme* if it has none.

    The ``UUID`` scheme is minted locally. Any other scheme is requested from
    the repository node; if that request fails the empty string is returned
    and the caller must stop processing the record.
    """

    if record.has_pid:
        logger.debug(
            "using existing identifier",
            extra={"stage": "identifier", "file": record.file, "pid": record.pid},
        )
        return str(record.pid)

    logger.info(
        "minting new identifier with scheme %s",
        scheme,
        extra={"stage": "identifier", "file": record.file},
    )
    if scheme.upper() == UUID_SCHEME:
        return mint_uuid()

    result = client.mint_identifier(scheme)
    if not result.ok or not result.value:
        logger.error(
            "identifier minting failed: %s",
            result.message or result.error,
            extra={"stage": "identifier", "file": record.file, "error_kind": str(result.error)},
        )
        return ""
    return result.value


def generate_resource_map_pid(metadata_pid: str) -> str:
    """Derive the resource-map identifier from a metadata identifier."""

    if not isinstance(metadata_pid, str) or not metadata_pid:
        raise ValueError("metadata_pid must be a non-empty string")
    if metadata_pid.startswith(RESOURCE_MAP_PREFIX):
        return metadata_pid
    return f"{RESOURCE_MAP_PREFIX}{metadata_pid}"
