# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload",
#   "purpose": "Package initialization for ArchiveSync.PackageUpload",
#   "sections": [
#     {
#       "id": "getattr",
#       "name": "__getattr__",
#       "anchor": "function-getattr",
#       "kind": "function"
#     },
#     {
#       "id": "dir",
#       "name": "__dir__",
#       "anchor": "function-dir",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Public API for ArchiveSync package uploads.

This facade exposes the orchestrators that turn an inventory of files into
data packages on a repository node: identifier minting, descriptor
construction, object upload, resource-map generation, and versioned updates.
Symbols are imported lazily so that ``import ArchiveSync.PackageUpload`` does
not pull in HTTPX, rdflib or DuckDB until they are used.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

from .exports import EXPORT_MAP, EXPORTS, PUBLIC_API_MANIFEST

__version__ = "0.1.0"

_PUBLIC_EXPORTS = tuple(spec.name for spec in EXPORTS if spec.include_in_manifest)

__all__ = [*_PUBLIC_EXPORTS, "PUBLIC_API_MANIFEST", "__version__"]


def __getattr__(name: str) -> Any:
    """Lazily import API exports on first access."""

    if name == "PUBLIC_API_MANIFEST":
        globals()[name] = PUBLIC_API_MANIFEST
        return PUBLIC_API_MANIFEST

    spec = EXPORT_MAP.get(name)
    if spec is not None and spec.name in _PUBLIC_EXPORTS:
        module = import_module(f"{__name__}.{spec.module}")
        value = getattr(module, spec.name)
        globals()[name] = value
        return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
