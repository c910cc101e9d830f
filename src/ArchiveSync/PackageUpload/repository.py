# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.PackageUpload.repository",
#   "purpose": "Result type, repository client protocol, and HTTPX member-node client",
#   "sections": [
#     {"id": "results", "name": "Remote Results", "anchor": "RES", "kind": "api"},
#     {"id": "protocol", "name": "Repository Client Protocol", "anchor": "PRO", "kind": "api"},
#     {"id": "tokens", "name": "Token Expiry", "anchor": "TOK", "kind": "infra"},
#     {"id": "client", "name": "Member Node Client", "anchor": "MNC", "kind": "infra"}
#   ]
# }
# === /NAVMAP ===

"""Repository (member node) access for package uploads.

The orchestrators talk to the repository exclusively through the
:class:`RepositoryClient` protocol. Every call returns a :class:`RemoteResult`
instead of raising, with the failure kind enumerated so callers can tell a
missing object from a conflict, an expired session, or a transient outage.

:class:`MemberNodeClient` implements the protocol over HTTPX against the
DataONE v2 member-node REST API:

- ``HEAD /v2/object/{pid}`` answers existence checks.
- ``POST /v2/object`` creates an object from a multipart body carrying the
  identifier, the bytes and the system-metadata XML.
- ``PUT /v2/object/{pid}`` replaces an object with a new version.
- ``POST /v2/generate`` mints an identifier under a scheme.

Existence checks and minting are retried on transient failures with a
Tenacity policy; create and update are attempted exactly once so that a
retry can never publish the same identifier twice.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Generic, Optional, Protocol, TypeVar
from urllib.parse import quote

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .settings import RepositorySettings
from .sysmeta import SystemMetadata

__all__ = [
    "RemoteErrorKind",
    "RemoteResult",
    "RepositoryClient",
    "MemberNodeClient",
    "token_expired",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


# ============================================================================
# Remote Results (RES)
# ============================================================================


class RemoteErrorKind(str, Enum):
    """Why a remote call failed."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    AUTH_EXPIRED = "auth_expired"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RemoteResult(Generic[T]):
    """Success value or typed failure returned by every repository call."""

    value: Optional[T] = None
    error: Optional[RemoteErrorKind] = None
    message: str = ""
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "RemoteResult[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: RemoteErrorKind,
        message: str = "",
        *,
        status_code: Optional[int] = None,
    ) -> "RemoteResult[T]":
        return cls(error=kind, message=message, status_code=status_code)


# ============================================================================
# Repository Client Protocol (PRO)
# ============================================================================


class RepositoryClient(Protocol):
    """Operations the orchestrators need from a repository node."""

    def is_token_expired(self) -> bool:
        """Return ``True`` when the session token can no longer authorise writes."""

    def object_exists(self, identifier: str) -> RemoteResult[bool]:
        """Report whether *identifier* names an object on the node."""

    def mint_identifier(self, scheme: str, fragment: Optional[str] = None) -> RemoteResult[str]:
        """Ask the node for a fresh identifier under *scheme*."""

    def create_object(
        self, identifier: str, sysmeta: SystemMetadata, path: Path
    ) -> RemoteResult[str]:
        """Upload *path* as a new object named *identifier*."""

    def update_object(
        self,
        old_identifier: str,
        new_identifier: str,
        sysmeta: SystemMetadata,
        path: Path,
    ) -> RemoteResult[str]:
        """Publish *path* as *new_identifier*, obsoleting *old_identifier*."""


# ============================================================================
# Token Expiry (TOK)
# ============================================================================


def _decode_jwt_claims(token: str) -> Optional[Dict[str, Any]]:
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    return claims if isinstance(claims, dict) else None


def token_expired(token: Optional[str], *, now: Optional[float] = None, leeway: float = 0.0) -> bool:
    """Return ``True`` if *token* is missing, malformed, or past its ``exp`` claim.

    The check is local; no request is sent to the node.
    """

    if not token:
        return True
    claims = _decode_jwt_claims(token.strip())
    if claims is None:
        return True
    expires_at = claims.get("exp")
    if not isinstance(expires_at, (int, float)):
        return True
    current = time.time() if now is None else now
    return current + leeway >= float(expires_at)


# ============================================================================
# Member Node Client (MNC)
# ============================================================================


class _TransientStatus(Exception):
    """Raised inside the retry loop for 429/5xx responses."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _classify_status(status_code: int) -> Optional[RemoteErrorKind]:
    if 200 <= status_code < 300:
        return None
    if status_code == 401:
        return RemoteErrorKind.AUTH_EXPIRED
    if status_code == 404:
        return RemoteErrorKind.NOT_FOUND
    if status_code == 409:
        return RemoteErrorKind.CONFLICT
    if status_code in _RETRYABLE_STATUS:
        return RemoteErrorKind.TRANSIENT
    return RemoteErrorKind.REJECTED


def _parse_identifier(payload: str) -> str:
    """Extract the identifier from a ``<d1:identifier>`` response body."""

    text = payload.strip()
    if not text:
        return ""
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return text
    return (root.text or "").strip()


def _error_detail(response: httpx.Response) -> str:
    """Return the ``description`` of a DataONE exception body, if present."""

    try:
        root = ET.fromstring(response.text)
    except ET.ParseError:
        return response.text.strip()[:500]
    description = root.find("description")
    if description is not None and description.text:
        return description.text.strip()
    return root.attrib.get("name", "") or response.reason_phrase


class MemberNodeClient:
    """HTTPX implementation of :class:`RepositoryClient` for a DataONE member node."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout_sec: float = 60.0,
        max_retries: int = 3,
        verify_tls: bool = True,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_sec),
            verify=verify_tls,
            follow_redirects=True,
        )
        self._retry_attempts = max_retries + 1

    @classmethod
    def from_settings(
        cls, settings: RepositorySettings, *, client: Optional[httpx.Client] = None
    ) -> "MemberNodeClient":
        return cls(
            settings.base_url,
            token=settings.token,
            client=client,
            timeout_sec=settings.timeout_sec,
            max_retries=settings.max_retries,
            verify_tls=settings.verify_tls,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MemberNodeClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _url(self, *segments: str) -> str:
        encoded = "/".join(quote(segment, safe="") for segment in segments)
        return f"{self.base_url}/v2/{encoded}"

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = self._client.request(method, url, headers=self._headers(), **kwargs)
        if response.status_code in _RETRYABLE_STATUS:
            raise _TransientStatus(response)
        return response

    def _send(
        self, method: str, url: str, *, idempotent: bool, **kwargs: Any
    ) -> RemoteResult[httpx.Response]:
        attempts = self._retry_attempts if idempotent else 1
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(multiplier=0.5, max=10),
            retry=retry_if_exception_type((_TransientStatus, httpx.TransportError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._request(method, url, **kwargs)
        except _TransientStatus as exc:
            return RemoteResult.failure(
                RemoteErrorKind.TRANSIENT,
                f"{method} {url} failed: {_error_detail(exc.response)}",
                status_code=exc.response.status_code,
            )
        except httpx.HTTPError as exc:
            return RemoteResult.failure(RemoteErrorKind.TRANSIENT, f"{method} {url} failed: {exc}")
        return RemoteResult.success(response)

    def _as_identifier(self, result: RemoteResult[httpx.Response]) -> RemoteResult[str]:
        if not result.ok or result.value is None:
            return RemoteResult.failure(
                result.error or RemoteErrorKind.TRANSIENT,
                result.message,
                status_code=result.status_code,
            )
        response = result.value
        kind = _classify_status(response.status_code)
        if kind is not None:
            return RemoteResult.failure(
                kind, _error_detail(response), status_code=response.status_code
            )
        identifier = _parse_identifier(response.text)
        if not identifier:
            return RemoteResult.failure(
                RemoteErrorKind.REJECTED,
                "node returned an empty identifier",
                status_code=response.status_code,
            )
        return RemoteResult.success(identifier)

    def is_token_expired(self) -> bool:
        return token_expired(self._token)

    def object_exists(self, identifier: str) -> RemoteResult[bool]:
        result = self._send("HEAD", self._url("object", identifier), idempotent=True)
        if not result.ok or result.value is None:
            return RemoteResult.failure(
                result.error or RemoteErrorKind.TRANSIENT,
                result.message,
                status_code=result.status_code,
            )
        status_code = result.value.status_code
        if status_code == 404:
            return RemoteResult.success(False)
        kind = _classify_status(status_code)
        if kind is not None:
            return RemoteResult.failure(
                kind, f"existence check for {identifier} returned {status_code}", status_code=status_code
            )
        return RemoteResult.success(True)

    def mint_identifier(self, scheme: str, fragment: Optional[str] = None) -> RemoteResult[str]:
        data = {"scheme": scheme}
        if fragment:
            data["fragment"] = fragment
        result = self._send("POST", self._url("generate"), idempotent=True, data=data)
        return self._as_identifier(result)

    def _upload(
        self,
        method: str,
        url: str,
        data: Dict[str, str],
        sysmeta: SystemMetadata,
        path: Path,
    ) -> RemoteResult[str]:
        try:
            handle = Path(path).open("rb")
        except OSError as exc:
            return RemoteResult.failure(RemoteErrorKind.REJECTED, f"cannot read {path}: {exc}")
        with handle:
            files = {
                "object": (sysmeta.file_name, handle, "application/octet-stream"),
                "sysmeta": ("sysmeta.xml", sysmeta.to_xml(), "text/xml"),
            }
            result = self._send(method, url, idempotent=False, data=data, files=files)
        return self._as_identifier(result)

    def create_object(
        self, identifier: str, sysmeta: SystemMetadata, path: Path
    ) -> RemoteResult[str]:
        return self._upload("POST", self._url("object"), {"pid": identifier}, sysmeta, path)

    def update_object(
        self,
        old_identifier: str,
        new_identifier: str,
        sysmeta: SystemMetadata,
        path: Path,
    ) -> RemoteResult[str]:
        return self._upload(
            "PUT", self._url("object", old_identifier), {"newPid": new_identifier}, sysmeta, path
        )
