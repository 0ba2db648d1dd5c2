"""
Canonical Event Schema

This is an event-sourced ledger, not CRUD.
Every lifecycle transition produces one immutable, hash-chained event.
Asset state is a projection of the event stream and can be rebuilt from it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """
    All possible event types.
    You can add more later, never remove.
    """
    ASSET_REGISTERED = "ASSET_REGISTERED"
    ASSET_SANITIZED = "ASSET_SANITIZED"
    ASSET_RECYCLED = "ASSET_RECYCLED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"


# ============================================================
# Transaction payloads
# What the wallet signs and the transport carries
# ============================================================

class TransactionPayload(BaseModel):
    """
    Deterministic description of a requested transition.

    The canonical hash of this object is the digest a wallet signs.
    It carries no timestamps, so a retried request produces the same digest
    and the same idempotency key. asset_version (number of transitions the
    asset has already seen) keeps repeated-but-distinct transfers apart.
    """
    action: EventType
    actor: str
    asset_id: Optional[int] = None
    asset_version: Optional[int] = None
    serial_number: Optional[str] = None
    model: Optional[str] = None
    evidence_ref: Optional[str] = None
    new_owner: Optional[str] = None

    def digest(self) -> str:
        from ..core.hasher import Hasher
        return Hasher.hash_data(self)


class TransactionAuthorization(BaseModel):
    """A wallet's signature over a TransactionPayload digest."""
    actor: str
    public_key: str
    digest: str
    signature: str


class Transition(BaseModel):
    """The message handed to the ledger transport."""
    payload: TransactionPayload
    authorization: TransactionAuthorization
    idempotency_key: str = Field(
        ...,
        description="Stable across retries of the same logical transition"
    )


# ============================================================
# Event payloads
# ============================================================

class AssetRegisteredPayload(BaseModel):
    asset_id: int
    serial_number: str
    model: str
    owner: str
    registration_time: datetime
    schema_version: int = 1


class AssetSanitizedPayload(BaseModel):
    asset_id: int
    evidence_ref: str
    technician: str
    sanitization_time: datetime
    schema_version: int = 1


class AssetRecycledPayload(BaseModel):
    asset_id: int
    recycled_by: str
    carbon_credits: int
    recycling_time: datetime
    schema_version: int = 1


class OwnershipTransferredPayload(BaseModel):
    asset_id: int
    previous_owner: str
    new_owner: str
    transferred_by: str
    transfer_time: datetime
    schema_version: int = 1


# ============================================================
# The Ledger Event
# ============================================================

class LedgerEvent(BaseModel):
    """
    The atomic unit of the ledger.

    CHAIN RULES:
    - sequence_number is gap-free and starts at 0
    - previous_event_hash is None ONLY for sequence 0
    - event_hash = SHA256(previous_event_hash ":" canonical(chain_body()))
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: EventType
    asset_id: int

    payload: dict[str, Any]

    previous_event_hash: Optional[str] = None
    event_hash: str

    # Attribution: who asked, proven by their wallet signature over the
    # transaction digest
    actor: str
    actor_public_key: str
    actor_signature: str
    transaction_digest: str
    transaction_id: str

    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    def validate_chain_rules(self) -> None:
        """Raises ValueError if chain rules are violated."""
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )

    def chain_body(self) -> dict[str, Any]:
        """
        The hashed portion of the event.

        Binds the payload to its attribution and transaction, so rewriting
        who signed or which transaction confirmed it breaks the chain.
        """
        return {
            "event_id": self.event_id,
            "sequence_number": self.sequence_number,
            "event_type": self.event_type,
            "asset_id": self.asset_id,
            "payload": self.payload,
            "actor": self.actor,
            "actor_public_key": self.actor_public_key,
            "actor_signature": self.actor_signature,
            "transaction_digest": self.transaction_digest,
            "transaction_id": self.transaction_id,
            "created_at": self.created_at,
        }
