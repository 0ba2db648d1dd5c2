# Core ledger services
from .hasher import Hasher, CanonicalSerializationError
from .errors import (
    LedgerError,
    InvalidInput,
    DuplicateSerialNumber,
    Unauthorized,
    AssetNotFound,
    InvalidTransition,
    MissingEvidence,
    EvidenceNotFound,
    UserRejected,
    NetworkError,
    TransportTimeout,
    Reverted,
    LedgerBusy,
    ChainError,
)
from .signer import Signer
from .wallet import WalletSigner, KeyWallet, PresignedWallet, SignatureBundleWallet
from .evidence_store import (
    EvidenceStore,
    InMemoryEvidenceStore,
    IpfsHttpEvidenceStore,
    compute_cid,
)
from .transport import LedgerTransport, LocalChainTransport, JsonRpcTransport
from .locks import KeyedLocks
from .ledger import LedgerService
from .bulk import BulkItem, BulkItemResult, BulkOperationSummary, bulk_register

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    # Errors
    "LedgerError",
    "InvalidInput",
    "DuplicateSerialNumber",
    "Unauthorized",
    "AssetNotFound",
    "InvalidTransition",
    "MissingEvidence",
    "EvidenceNotFound",
    "UserRejected",
    "NetworkError",
    "TransportTimeout",
    "Reverted",
    "LedgerBusy",
    "ChainError",
    # Collaborators
    "Signer",
    "WalletSigner",
    "KeyWallet",
    "PresignedWallet",
    "SignatureBundleWallet",
    "EvidenceStore",
    "InMemoryEvidenceStore",
    "IpfsHttpEvidenceStore",
    "compute_cid",
    "LedgerTransport",
    "LocalChainTransport",
    "JsonRpcTransport",
    "KeyedLocks",
    # Ledger
    "LedgerService",
    "BulkItem",
    "BulkItemResult",
    "BulkOperationSummary",
    "bulk_register",
]
