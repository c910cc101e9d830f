"""Testing utilities for exercising the package orchestrators without a network.

:class:`FakeRepositoryClient` implements the repository client protocol in
memory. It records every remote call, keeps the set of identifiers that
"exist" on the node, and can be told to fail specific calls so tests can
drive the orchestrators into each of their halting states.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from ..repository import RemoteErrorKind, RemoteResult
from ..sysmeta import SystemMetadata

__all__ = ["RemoteCall", "FakeRepositoryClient"]


@dataclass(frozen=True)
class RemoteCall:
    """One call made against :class:`FakeRepositoryClient`."""

    method: str
    identifier: str
    new_identifier: Optional[str] = None
    sysmeta: Optional[SystemMetadata] = None
    payload: Optional[bytes] = None


@dataclass
class FakeRepositoryClient:
    """In-memory repository node.

    Attributes:
        existing: Identifiers treated as already present on the node.
        fail_on: Identifiers whose create/update calls fail with ``REJECTED``.
        unreachable: Identifiers whose existence checks fail with ``TRANSIENT``.
        token_expired: Value returned by :meth:`is_token_expired`.
        minted_prefix: Prefix of identifiers returned by :meth:`mint_identifier`.
        mint_fails: Make every minting request fail.
    """

    existing: Set[str] = field(default_factory=set)
    fail_on: Set[str] = field(default_factory=set)
    unreachable: Set[str] = field(default_factory=set)
    token_expired: bool = False
    minted_prefix: str = "doi:10.5065/FAKE"
    mint_fails: bool = False
    calls: List[RemoteCall] = field(default_factory=list)
    _counter: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _record(self, call: RemoteCall) -> None:
        with self._lock:
            self.calls.append(call)

    @property
    def uploads(self) -> List[RemoteCall]:
        return [call for call in self.calls if call.method in {"create", "update"}]

    def calls_for(self, method: str) -> List[RemoteCall]:
        return [call for call in self.calls if call.method == method]

    def created_identifiers(self) -> Tuple[str, ...]:
        return tuple(call.identifier for call in self.calls_for("create"))

    def is_token_expired(self) -> bool:
        # Local check; not recorded as a remote call.
        return self.token_expired

    def object_exists(self, identifier: str) -> RemoteResult[bool]:
        self._record(RemoteCall("exists", identifier))
        if identifier in self.unreachable:
            return RemoteResult.failure(RemoteErrorKind.TRANSIENT, "node unreachable", status_code=503)
        return RemoteResult.success(identifier in self.existing)

    def mint_identifier(self, scheme: str, fragment: Optional[str] = None) -> RemoteResult[str]:
        self._record(RemoteCall("mint", scheme))
        if self.mint_fails:
            return RemoteResult.failure(RemoteErrorKind.REJECTED, "minting disabled", status_code=400)
        with self._lock:
            self._counter += 1
            counter = self._counter
        return RemoteResult.success(f"{self.minted_prefix}{counter}")

    def _store(self, identifier: str, path: Path) -> RemoteResult[str]:
        if identifier in self.fail_on:
            return RemoteResult.failure(RemoteErrorKind.REJECTED, "rejected by fake node", status_code=400)
        with self._lock:
            if identifier in self.existing:
                return RemoteResult.failure(
                    RemoteErrorKind.CONFLICT, f"identifier {identifier} already in use", status_code=409
                )
            self.existing.add(identifier)
        return RemoteResult.success(identifier)

    def create_object(self, identifier: str, sysmeta: SystemMetadata, path: Path) -> RemoteResult[str]:
        self._record(RemoteCall("create", identifier, sysmeta=sysmeta, payload=Path(path).read_bytes()))
        return self._store(identifier, path)

    def update_object(
        self,
        old_identifier: str,
        new_identifier: str,
        sysmeta: SystemMetadata,
        path: Path,
    ) -> RemoteResult[str]:
        self._record(
            RemoteCall(
                "update",
                old_identifier,
                new_identifier=new_identifier,
                sysmeta=sysmeta,
                payload=Path(path).read_bytes(),
            )
        )
        if old_identifier not in self.existing:
            return RemoteResult.failure(
                RemoteErrorKind.NOT_FOUND, f"object {old_identifier} not found", status_code=404
            )
        return self._store(new_identifier, path)

    def seed(self, identifiers: Iterable[str]) -> None:
        """Mark *identifiers* as present on the node."""

        with self._lock:
            self.existing.update(identifiers)

    def close(self) -> None:
        """Nothing to release; mirrors :meth:`MemberNodeClient.close`."""
