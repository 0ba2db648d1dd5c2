# Canonical schemas for the asset lifecycle ledger.

from .events import (
    LedgerEvent,
    EventType,
    TransactionPayload,
    TransactionAuthorization,
    Transition,
    AssetRegisteredPayload,
    AssetSanitizedPayload,
    AssetRecycledPayload,
    OwnershipTransferredPayload,
)
from .asset import (
    Asset,
    AssetHistory,
    AssetStatus,
    StatusPage,
    TransitionReceipt,
    TransitionRecord,
)
from .evidence import SanitizationReport, EvidenceUploadResult

__all__ = [
    # Events
    "LedgerEvent",
    "EventType",
    "TransactionPayload",
    "TransactionAuthorization",
    "Transition",
    "AssetRegisteredPayload",
    "AssetSanitizedPayload",
    "AssetRecycledPayload",
    "OwnershipTransferredPayload",
    # Asset
    "Asset",
    "AssetHistory",
    "AssetStatus",
    "StatusPage",
    "TransitionReceipt",
    "TransitionRecord",
    # Evidence
    "SanitizationReport",
    "EvidenceUploadResult",
]
