"""
Ledger Configuration

Environment Variables:
    ASSETLEDGER_CONTRACT_OWNER: Address allowed to register assets
    ASSETLEDGER_OWNER_PRIVATE_KEY: Base64 Ed25519 key of the contract owner
        (the owner address is derived from it when CONTRACT_OWNER is unset)
    ASSETLEDGER_ADMINS: Comma-separated extra administrator addresses
    ASSETLEDGER_IDEMPOTENCY_WINDOW_SECONDS: Retry absorption window (default 600)
    ASSETLEDGER_LOCK_TIMEOUT_SECONDS: Per-asset critical section wait (default 5)
    ASSETLEDGER_CARBON_CREDITS_PER_RECYCLE: Credits awarded on recycling (default 10)
    ASSETLEDGER_MAX_PAGE_SIZE: Upper bound for status query pages (default 100)
    ASSETLEDGER_VERIFY_EVIDENCE: Require evidence refs to resolve (default true)
    ASSETLEDGER_EVIDENCE_DRIVER: memory | ipfs (default memory)
    ASSETLEDGER_IPFS_API_URL: IPFS HTTP API (default http://127.0.0.1:5001)
    ASSETLEDGER_TRANSPORT_DRIVER: local | jsonrpc (default local)
    ASSETLEDGER_RPC_URL: JSON-RPC endpoint for the jsonrpc transport
    ASSETLEDGER_RPC_TIMEOUT_SECONDS: Transport timeout (default 30)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .core.evidence_store import EvidenceStore, InMemoryEvidenceStore, IpfsHttpEvidenceStore
from .core.signer import Signer
from .core.transport import JsonRpcTransport, LedgerTransport, LocalChainTransport


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class LedgerConfig:
    contract_owner: Optional[str] = None
    owner_private_key: Optional[str] = None
    administrators: list[str] = field(default_factory=list)

    idempotency_window_seconds: float = 600.0
    lock_timeout_seconds: float = 5.0
    carbon_credits_per_recycle: int = 10
    max_page_size: int = 100
    verify_evidence: bool = True

    evidence_driver: str = "memory"
    ipfs_api_url: str = "http://127.0.0.1:5001"

    transport_driver: str = "local"
    rpc_url: Optional[str] = None
    rpc_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        owner_key = os.getenv("ASSETLEDGER_OWNER_PRIVATE_KEY") or None
        owner = os.getenv("ASSETLEDGER_CONTRACT_OWNER") or None
        if owner is None and owner_key:
            owner = Signer.address_for(Signer.public_key_for(owner_key))

        admins = [
            a.strip()
            for a in os.getenv("ASSETLEDGER_ADMINS", "").split(",")
            if a.strip()
        ]

        return cls(
            contract_owner=owner,
            owner_private_key=owner_key,
            administrators=admins,
            idempotency_window_seconds=float(
                os.getenv("ASSETLEDGER_IDEMPOTENCY_WINDOW_SECONDS", "600")
            ),
            lock_timeout_seconds=float(os.getenv("ASSETLEDGER_LOCK_TIMEOUT_SECONDS", "5")),
            carbon_credits_per_recycle=int(
                os.getenv("ASSETLEDGER_CARBON_CREDITS_PER_RECYCLE", "10")
            ),
            max_page_size=int(os.getenv("ASSETLEDGER_MAX_PAGE_SIZE", "100")),
            verify_evidence=_env_bool("ASSETLEDGER_VERIFY_EVIDENCE", True),
            evidence_driver=os.getenv("ASSETLEDGER_EVIDENCE_DRIVER", "memory").lower(),
            ipfs_api_url=os.getenv("ASSETLEDGER_IPFS_API_URL", "http://127.0.0.1:5001"),
            transport_driver=os.getenv("ASSETLEDGER_TRANSPORT_DRIVER", "local").lower(),
            rpc_url=os.getenv("ASSETLEDGER_RPC_URL") or None,
            rpc_timeout_seconds=float(os.getenv("ASSETLEDGER_RPC_TIMEOUT_SECONDS", "30")),
        )

    def create_evidence_store(self) -> EvidenceStore:
        if self.evidence_driver == "memory":
            return InMemoryEvidenceStore()
        if self.evidence_driver == "ipfs":
            return IpfsHttpEvidenceStore(api_url=self.ipfs_api_url)
        raise ValueError(
            f"Unknown ASSETLEDGER_EVIDENCE_DRIVER: {self.evidence_driver}. "
            "Valid values: memory, ipfs"
        )

    def create_transport(self) -> LedgerTransport:
        if self.transport_driver == "local":
            return LocalChainTransport()
        if self.transport_driver == "jsonrpc":
            if not self.rpc_url:
                raise ValueError("ASSETLEDGER_TRANSPORT_DRIVER=jsonrpc requires ASSETLEDGER_RPC_URL")
            return JsonRpcTransport(self.rpc_url, timeout=self.rpc_timeout_seconds)
        raise ValueError(
            f"Unknown ASSETLEDGER_TRANSPORT_DRIVER: {self.transport_driver}. "
            "Valid values: local, jsonrpc"
        )
