"""Export manifest and public API surface.

This module defines the public API and export configuration for PackageUpload.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

__all__ = [
    "ExportSpec",
    "EXPORT_MAP",
    "EXPORTS",
    "PUBLIC_API_MANIFEST",
]


@dataclass(frozen=True)
class ExportSpec:
    """Specification for an exported symbol."""

    name: str
    """Name of the symbol."""

    module: str
    """Module (relative to the package) where the symbol is defined."""

    include_in_manifest: bool = True
    """Whether to include this symbol in the public API manifest."""

    doc: str = ""
    """Short documentation string."""


_CORE_SPECS = [
    ExportSpec("insert_file", "pipeline", doc="Upload a single inventory file"),
    ExportSpec("insert_package", "pipeline", doc="Upload one package and its resource map"),
    ExportSpec("insert_all", "pipeline", doc="Upload every ready package in dependency order"),
    ExportSpec("PackagingContext", "pipeline", doc="Collaborators shared by the orchestrators"),
    ExportSpec("update_package", "versioning", doc="Publish new metadata and resource map versions"),
    ExportSpec("generate_resource_map", "resource_map", doc="Build a package's statement set"),
    ExportSpec("filter_packaging_statements", "resource_map", doc="Drop generated statements"),
    ExportSpec("parse_resource_map", "resource_map", doc="Read a serialized resource map"),
    ExportSpec("serialize_resource_map", "resource_map", doc="Render a resource map as RDF"),
    ExportSpec("Statement", "resource_map", doc="RDF triple with term kinds"),
    ExportSpec("ResourceMap", "resource_map", doc="Statement set plus aggregated identifiers"),
    ExportSpec("InventoryRecord", "inventory", doc="One file of the inventory"),
    ExportSpec("InMemoryInventory", "inventory", doc="Lock-guarded in-memory store"),
    ExportSpec("package_order", "inventory", doc="Packages ordered children first"),
    ExportSpec("InventoryDatabase", "database", doc="DuckDB-backed inventory store"),
    ExportSpec("MemberNodeClient", "repository", doc="HTTPX repository node client"),
    ExportSpec("RemoteResult", "repository", doc="Success-or-typed-failure result"),
    ExportSpec("RemoteErrorKind", "repository", doc="Remote failure kinds"),
    ExportSpec("get_or_create_pid", "identifiers", doc="Reuse or mint an identifier"),
    ExportSpec("generate_resource_map_pid", "identifiers", doc="Derive a resource map identifier"),
    ExportSpec("create_sysmeta", "sysmeta", doc="Build an object descriptor"),
    ExportSpec("create_object", "upload", doc="Upload one file with its descriptor"),
    ExportSpec("load_settings", "settings", doc="Load packaging settings from YAML"),
    ExportSpec("PackagingSettings", "settings", doc="Packaging settings model"),
    ExportSpec("setup_logging", "logging_utils", doc="Configure JSON logging"),
    ExportSpec("PackageUploadError", "errors", doc="Base exception"),
    ExportSpec("PreconditionError", "errors", doc="Invalid input or unmet precondition"),
    ExportSpec("DependencyError", "errors", doc="Child packages not created yet"),
]

EXPORTS: list[ExportSpec] = _CORE_SPECS

# Symbol name -> export spec
EXPORT_MAP: dict[str, ExportSpec] = {spec.name: spec for spec in EXPORTS}

PUBLIC_API_MANIFEST: dict[str, Any] = {
    "version": "1.0.0",
    "modules": sorted({spec.module for spec in EXPORTS}),
    "symbols": [spec.name for spec in EXPORTS if spec.include_in_manifest],
}
