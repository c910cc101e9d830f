"""Checksum helpers used when describing generated artefacts.

Inventory rows already carry the SHA-256 digest of each source file, so this
module is only needed for content produced during a run: serialized resource
maps and rewritten metadata documents. Digests are computed by streaming the
file in fixed-size chunks so large documents never sit in memory.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

__all__ = [
    "CHECKSUM_ALGORITHM",
    "Hasher",
    "StreamingHasher",
    "sha256_file",
]

CHECKSUM_ALGORITHM = "SHA256"
_CHECKSUM_STREAM_CHUNK_SIZE = 1024 * 1024

_REPOSITORY_NAMES = {
    "md5": "MD5",
    "sha1": "SHA-1",
    "sha256": "SHA256",
    "sha512": "SHA-512",
}


class Hasher(Protocol):
    """Compute a hex digest for a file on disk."""

    algorithm: str

    def checksum(self, path: Path) -> str:
        """Return the lowercase hex digest of *path*."""


@dataclass(slots=True, frozen=True)
class StreamingHasher:
    """Hasher backed by :mod:`hashlib`, reading files in chunks."""

    name: str = "sha256"
    chunk_size: int = _CHECKSUM_STREAM_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.name not in _REPOSITORY_NAMES:
            raise ValueError(f"unsupported checksum algorithm '{self.name}'")

    @property
    def algorithm(self) -> str:
        """Algorithm name as the repository spells it in descriptors."""

        return _REPOSITORY_NAMES[self.name]

    def checksum(self, path: Path) -> str:
        digest = hashlib.new(self.name)
        with Path(path).open("rb") as handle:
            for chunk in iter(lambda: handle.read(self.chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()


def sha256_file(path: Path) -> str:
    """Return the SHA-256 hex digest of *path*."""

    return StreamingHasher().checksum(path)
