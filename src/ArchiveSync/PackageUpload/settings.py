# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.settings",
#   "purpose": "Define configuration models, YAML loading, and environment overrides",
#   "sections": [
#     {"id": "loggingconfiguration", "name": "LoggingConfiguration", "anchor": "class-loggingconfiguration", "kind": "class"},
#     {"id": "repositorysettings", "name": "RepositorySettings", "anchor": "class-repositorysettings", "kind": "class"},
#     {"id": "accessrulesettings", "name": "AccessRuleSettings", "anchor": "class-accessrulesettings", "kind": "class"},
#     {"id": "databaseconfiguration", "name": "DatabaseConfiguration", "anchor": "class-databaseconfiguration", "kind": "class"},
#     {"id": "packagingsettings", "name": "PackagingSettings", "anchor": "class-packagingsettings", "kind": "class"},
#     {"id": "environmentoverrides", "name": "EnvironmentOverrides", "anchor": "class-environmentoverrides", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for package insertion and update.

Settings mirror the environment file used by the packaging scripts
(``etc/environment.yml``): where files live on disk, which identifier schemes
to mint with, who submits and holds rights to the objects, and how to reach
the repository node. Values are validated with pydantic; a small set of
``ARCHIVESYNC_*`` environment variables may override the file so that tokens
never need to be written to disk.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:  # pragma: no cover - dependency guard
    import yaml
except ModuleNotFoundError as exc:  # pragma: no cover - dependency guard
    raise ModuleNotFoundError("PyYAML is required for configuration parsing.") from exc

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_RESOLVE_BASE",
    "UUID_SCHEME",
    "LoggingConfiguration",
    "RepositorySettings",
    "AccessRuleSettings",
    "DatabaseConfiguration",
    "PackagingSettings",
    "EnvironmentOverrides",
    "build_settings",
    "load_settings",
]

DEFAULT_CONFIG_PATH = Path("etc/environment.yml")
DEFAULT_RESOLVE_BASE = "https://cn.dataone.org/cn/v2/resolve"
UUID_SCHEME = "UUID"

_VALID_PERMISSIONS = ("read", "write", "changePermission")


class LoggingConfiguration(BaseModel):
    """Logging-related configuration."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(default=100, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(default=30, ge=1, description="Retention period for log files")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper

    model_config = {"validate_assignment": True}


class RepositorySettings(BaseModel):
    """Connection settings for the repository (member) node."""

    base_url: str = Field(min_length=1, description="Member node base URL, e.g. https://host/mn")
    token: Optional[str] = Field(default=None, description="Bearer token used for writes")
    timeout_sec: float = Field(default=60.0, gt=0.0, le=3600.0)
    max_retries: int = Field(default=3, ge=0, le=20)
    verify_tls: bool = True

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    model_config = {"validate_assignment": True, "extra": "ignore"}


class AccessRuleSettings(BaseModel):
    """A subject and the permissions granted to it on every uploaded object."""

    subject: str = Field(min_length=1)
    permissions: List[str] = Field(default_factory=lambda: ["read"])

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("permissions must not be empty")
        unknown = [item for item in value if item not in _VALID_PERMISSIONS]
        if unknown:
            raise ValueError(f"unknown permission(s) {unknown}; expected {_VALID_PERMISSIONS}")
        return value


class DatabaseConfiguration(BaseModel):
    """DuckDB inventory database configuration."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".archivesync" / "inventory.duckdb",
        description="Path to the DuckDB inventory file",
    )
    readonly: bool = Field(default=False, description="Open the database in read-only mode")
    threads: Optional[int] = Field(
        default=None, ge=1, description="Threads for query execution; None lets DuckDB decide"
    )
    memory_limit: Optional[str] = Field(
        default=None, description="Memory limit as string (e.g. '8GB'); None uses auto"
    )

    model_config = {"validate_assignment": True}


class PackagingSettings(BaseModel):
    """Resolved configuration for one packaging run."""

    base_path: Path = Field(description="Directory prefix joined with each inventory 'file'")
    alternate_path: Optional[Path] = Field(
        default=None, description="Directory holding modified metadata for update runs"
    )
    metadata_identifier_scheme: str = Field(default=UUID_SCHEME, min_length=1)
    data_identifier_scheme: str = Field(default=UUID_SCHEME, min_length=1)
    submitter: str = Field(min_length=1)
    rights_holder: str = Field(min_length=1)
    resolve_base: str = Field(default=DEFAULT_RESOLVE_BASE, min_length=1)
    clear_replication_policy: bool = Field(
        default=True,
        description="Strip the replication policy from descriptors (for nodes that cannot replicate)",
    )
    access_rules: List[AccessRuleSettings] = Field(
        default_factory=lambda: [AccessRuleSettings(subject="public", permissions=["read"])]
    )
    updated_metadata_file_name: str = Field(default="science_metadata.xml", min_length=1)
    repository: RepositorySettings
    database: DatabaseConfiguration = Field(default_factory=DatabaseConfiguration)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    @field_validator("resolve_base")
    @classmethod
    def strip_resolve_slash(cls, value: str) -> str:
        return value.rstrip("/")

    model_config = {"validate_assignment": True, "extra": "forbid"}


class EnvironmentOverrides(BaseSettings):
    """Environment variables that take precedence over the settings file."""

    token: Optional[str] = Field(default=None, alias="ARCHIVESYNC_TOKEN")
    base_url: Optional[str] = Field(default=None, alias="ARCHIVESYNC_BASE_URL")
    base_path: Optional[Path] = Field(default=None, alias="ARCHIVESYNC_BASE_PATH")
    log_level: Optional[str] = Field(default=None, alias="ARCHIVESYNC_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVESYNC_", case_sensitive=False, extra="ignore"
    )


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    env = EnvironmentOverrides()
    logger = logging.getLogger(__name__)
    repository = dict(raw.get("repository") or {})
    applied: List[str] = []
    if env.token:
        repository["token"] = env.token
        applied.append("token")
    if env.base_url:
        repository["base_url"] = env.base_url
        applied.append("base_url")
    if repository:
        raw["repository"] = repository
    if env.base_path is not None:
        raw["base_path"] = env.base_path
        applied.append("base_path")
    if env.log_level:
        logging_block = dict(raw.get("logging") or {})
        logging_block["level"] = env.log_level
        raw["logging"] = logging_block
        applied.append("log_level")
    if applied:
        logger.debug("environment overrides applied", extra={"stage": "config", "keys": applied})
    return raw


def build_settings(raw: Mapping[str, object], *, apply_env: bool = True) -> PackagingSettings:
    """Validate a raw mapping into :class:`PackagingSettings`."""

    data: Dict[str, Any] = dict(raw)
    # Older environment files keep the node URL at the top level.
    if "mn_base_url" in data:
        repository = dict(data.get("repository") or {})
        repository.setdefault("base_url", data.pop("mn_base_url"))
        data["repository"] = repository
    if apply_env:
        data = _apply_env_overrides(data)
    try:
        return PackagingSettings.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid packaging settings: {exc}") from exc


def load_settings(path: Optional[Path] = None, *, apply_env: bool = True) -> PackagingSettings:
    """Load and validate packaging settings from a YAML file."""

    resolved = Path(path or DEFAULT_CONFIG_PATH).expanduser()
    try:
        payload = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Settings file not found: {resolved}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file {resolved} is not valid YAML: {exc}") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ConfigurationError(f"Settings file {resolved} must contain a mapping")
    return build_settings(payload, apply_env=apply_env)
