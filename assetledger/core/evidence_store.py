"""
Evidence Stores

Content-addressed storage for sanitization proofs (IPFS or equivalent).
The ledger never uploads evidence itself; callers put the document first and
pass the returned reference to record_sanitization.

Implementations:
- InMemoryEvidenceStore: CIDv1 (raw, sha2-256) references, for dev/tests
- IpfsHttpEvidenceStore: talks to an IPFS node's HTTP API through httpx
"""

import base64
import hashlib
from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional

import httpx

from ..observability import get_logger
from ..schemas import SanitizationReport
from .errors import EvidenceNotFound, InvalidInput, NetworkError, TransportTimeout
from .hasher import Hasher

logger = get_logger(__name__)


# CIDv1 prefix: version 1, raw codec (0x55), sha2-256 multihash (0x12, 32 bytes)
_CID_V1_RAW_SHA256_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])


def compute_cid(content: bytes) -> str:
    """CIDv1 (base32, raw codec) for content. Always starts with 'bafkrei'."""
    digest = hashlib.sha256(content).digest()
    encoded = base64.b32encode(_CID_V1_RAW_SHA256_PREFIX + digest).decode("ascii")
    return "b" + encoded.lower().rstrip("=")


def _as_bytes(document: bytes | str) -> bytes:
    if isinstance(document, str):
        return document.encode("utf-8")
    return document


class EvidenceStore(ABC):
    """Interface for sanitization-proof storage."""

    @abstractmethod
    def put(self, document: bytes | str) -> str:
        """Store a document and return its evidence reference."""

    @abstractmethod
    def get(self, ref: str) -> bytes:
        """
        Fetch a document.

        Raises:
            EvidenceNotFound: If nothing is stored under ref
        """

    def exists(self, ref: str) -> bool:
        try:
            self.get(ref)
        except EvidenceNotFound:
            return False
        return True

    def put_report(self, report: SanitizationReport) -> str:
        """Store a sanitization report in canonical form."""
        return self.put(Hasher.canonicalize(report))


class InMemoryEvidenceStore(EvidenceStore):
    """
    In-memory content-addressed store.

    NOT suitable for production (no durability).
    """

    def __init__(self):
        self._documents: dict[str, bytes] = {}
        self._lock = Lock()

    def put(self, document: bytes | str) -> str:
        content = _as_bytes(document)
        if not content:
            raise InvalidInput("Evidence document is empty")
        ref = compute_cid(content)
        with self._lock:
            self._documents[ref] = content
        logger.debug("Evidence stored", evidence_ref=ref, size=len(content))
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            content = self._documents.get(ref)
        if content is None:
            raise EvidenceNotFound(f"Evidence {ref} not found")
        return content

    def __len__(self) -> int:
        return len(self._documents)


class IpfsHttpEvidenceStore(EvidenceStore):
    """
    Evidence store backed by an IPFS node (Kubo HTTP RPC API).

    - put: POST /api/v0/add?cid-version=1&pin=true
    - get: POST /api/v0/cat?arg=<cid>
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:5001",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self._client = client or httpx.Client(base_url=api_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            return self._client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"IPFS request to {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"IPFS node unreachable: {e}") from e

    def put(self, document: bytes | str) -> str:
        content = _as_bytes(document)
        if not content:
            raise InvalidInput("Evidence document is empty")

        response = self._post(
            "/api/v0/add",
            params={"cid-version": "1", "pin": "true"},
            files={"file": ("evidence.json", content, "application/json")},
        )
        if response.status_code != 200:
            raise NetworkError(
                f"IPFS add failed: HTTP {response.status_code} {response.text.strip()}"
            )

        try:
            ref = response.json()["Hash"]
        except (ValueError, KeyError, TypeError) as e:
            raise NetworkError(f"IPFS add returned an unexpected response: {e}") from e
        logger.info("Evidence uploaded to IPFS", evidence_ref=ref, size=len(content))
        return ref

    def get(self, ref: str) -> bytes:
        response = self._post("/api/v0/cat", params={"arg": ref})
        if response.status_code == 200:
            return response.content

        message = response.text.strip()
        lowered = message.lower()
        if response.status_code == 404 or "not found" in lowered or "invalid" in lowered:
            raise EvidenceNotFound(f"Evidence {ref} not found: {message}")
        raise NetworkError(f"IPFS cat failed: HTTP {response.status_code} {message}")
