"""Structured logging helpers shared across package upload components."""

from __future__ import annotations

import gzip
import json
import logging
import re
import shutil
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

__all__ = ["LOGGER_NAME", "JSONFormatter", "mask_sensitive_data", "setup_logging"]

LOGGER_NAME = "ArchiveSync.PackageUpload"
DEFAULT_LOG_DIR = Path.home() / ".archivesync" / "logs"

_CONTEXT_FIELDS = ("stage", "package", "file", "pid")
_SENSITIVE_KEYS = {"authorization", "token", "secret", "password"}
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+")


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with tokens and authorization values masked."""

    def _mask_value(value: object, key_hint: Optional[str] = None) -> object:
        if isinstance(value, dict):
            return {
                sub_key: _mask_value(sub_value, str(sub_key).lower())
                for sub_key, sub_value in value.items()
            }
        if isinstance(value, (list, tuple)):
            return type(value)(_mask_value(item, key_hint) for item in value)
        if isinstance(value, str):
            if key_hint in _SENSITIVE_KEYS:
                return "***masked***"
            return _BEARER_PATTERN.sub("Bearer ***masked***", value)
        return value

    return {key: _mask_value(value, key.lower()) for key, value in payload.items()}


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries."""

    _RESERVED = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        """Render ``record`` as a JSON string including package context fields."""

        now = datetime.now(timezone.utc)
        payload: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            payload[name] = getattr(record, name, None)
        for key, value in record.__dict__.items():
            if key not in self._RESERVED and key not in payload:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def _apply_retention(log_dir: Path, retention_days: int) -> None:
    """Gzip run logs older than the retention period and delete expired archives.

    A log compressed in this pass gets a fresh mtime and survives until the
    next period.
    """

    cutoff = time.time() - retention_days * 86400
    for archive in log_dir.glob("archivesync-*.jsonl.gz"):
        if archive.stat().st_mtime < cutoff:
            archive.unlink(missing_ok=True)
    for log_file in log_dir.glob("archivesync-*.jsonl"):
        if log_file.stat().st_mtime < cutoff:
            with log_file.open("rb") as source, gzip.open(f"{log_file}.gz", "wb") as target:
                shutil.copyfileobj(source, target)
            log_file.unlink(missing_ok=True)


def setup_logging(
    *,
    level: str = "INFO",
    retention_days: int = 30,
    max_log_size_mb: int = 100,
    log_dir: Optional[Path] = None,
    propagate: bool = False,
) -> logging.Logger:
    """Configure package upload logging with a console stream and JSON file sidecar."""

    resolved_dir = Path(log_dir).expanduser() if log_dir is not None else DEFAULT_LOG_DIR
    resolved_dir.mkdir(parents=True, exist_ok=True)
    _apply_retention(resolved_dir, retention_days)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_archivesync_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler) and getattr(
                handler, "stream", None
            ) in (sys.stdout, sys.stderr):
                continue
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._archivesync_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    file_handler = RotatingFileHandler(
        resolved_dir / f"archivesync-{today}.jsonl",
        maxBytes=int(max_log_size_mb * 1024 * 1024),
        backupCount=5,
    )
    file_handler.setFormatter(JSONFormatter())
    file_handler._archivesync_managed = True  # type: ignore[attr-defined]
    logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
