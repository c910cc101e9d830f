"""Exception hierarchy shared across package insertion, update, and inventory storage.

Only fatal conditions are modelled as exceptions. Remote failures (minting,
create, update, existence checks) are reported through
:class:`~ArchiveSync.PackageUpload.repository.RemoteResult` values and the
flags on the returned inventory records, so callers inspect state rather than
catch errors to learn how far a package got.
"""

from __future__ import annotations

from typing import Optional, Sequence

__all__ = [
    "PackageUploadError",
    "PreconditionError",
    "DependencyError",
    "ConfigurationError",
    "InventoryConflictError",
]


class PackageUploadError(RuntimeError):
    """Base exception for packaging and upload failures."""


class PreconditionError(PackageUploadError):
    """Raised when an inventory or package violates a structural requirement.

    Raised before any remote call is made and before any record is mutated.
    """


class DependencyError(PreconditionError):
    """Raised when child packages are not fully created or form a cycle."""

    def __init__(self, message: str, *, packages: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.packages = tuple(packages or ())


class ConfigurationError(PackageUploadError):
    """Raised when settings files or environment overrides are invalid."""


class InventoryConflictError(PackageUploadError):
    """Raised when merging records would break identifier or ``created`` invariants."""

    def __init__(self, message: str, *, file: Optional[str] = None) -> None:
        super().__init__(message)
