"""
Ledger Error Taxonomy

Every failure the ledger can surface is a LedgerError subclass.
Each carries:
- code: stable discriminator string for API/CLI consumers
- retryable: whether the caller may retry with the same idempotency key

The ledger never retries on its own. Retry policy belongs to the caller.
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""
    code = "LEDGER_ERROR"
    retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class InvalidInput(LedgerError):
    """Malformed or empty fields. Local, never retried."""
    code = "INVALID_INPUT"


class DuplicateSerialNumber(LedgerError):
    """Serial number already registered (at any point in the ledger's life)."""
    code = "DUPLICATE_SERIAL_NUMBER"

    def __init__(self, serial_number: str, existing_asset_id: Optional[int] = None):
        self.serial_number = serial_number
        self.existing_asset_id = existing_asset_id
        super().__init__(f"Serial number '{serial_number}' is already registered")


class Unauthorized(LedgerError):
    """Actor lacks the capability for this operation, or its signature is invalid."""
    code = "UNAUTHORIZED"


class AssetNotFound(LedgerError):
    code = "ASSET_NOT_FOUND"

    def __init__(self, asset_id: int):
        self.asset_id = asset_id
        super().__init__(f"Asset {asset_id} does not exist")


class InvalidTransition(LedgerError):
    """Requested transition is not legal from the asset's current status."""
    code = "INVALID_TRANSITION"


class MissingEvidence(LedgerError):
    """Sanitization requested without an evidence reference."""
    code = "MISSING_EVIDENCE"


class EvidenceNotFound(MissingEvidence):
    """Evidence reference does not resolve in the evidence store."""
    code = "EVIDENCE_NOT_FOUND"


class UserRejected(LedgerError):
    """The wallet declined to authorize the transaction."""
    code = "USER_REJECTED"


class NetworkError(LedgerError):
    """Transport could not reach the ledger backend."""
    code = "NETWORK_ERROR"
    retryable = True


class TransportTimeout(LedgerError):
    """Wallet or transport did not answer in time. Asset is left unchanged."""
    code = "TIMEOUT"
    retryable = True


class Reverted(LedgerError):
    """The transport rejected the transition. Reason is surfaced verbatim."""
    code = "REVERTED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class LedgerBusy(LedgerError):
    """Could not enter the critical section for this asset/serial in time."""
    code = "LEDGER_BUSY"
    retryable = True


class ChainError(LedgerError):
    """Raised when chain integrity is compromised."""
    code = "CHAIN_INTEGRITY"
