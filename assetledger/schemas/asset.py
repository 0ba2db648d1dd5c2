"""
Canonical Asset Schema

An asset is an append-only record with a bounded, forward-moving status.
It is created by registration, mutated only by sanitization, recycling and
ownership transfer, and never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .events import EventType


class AssetStatus(int, Enum):
    """
    Lifecycle status. Numeric codes match the on-chain contract.

    REGISTERED -> SANITIZED -> RECYCLED, single step, never backwards.
    """
    REGISTERED = 0
    SANITIZED = 1
    RECYCLED = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()

    def next_status(self) -> Optional["AssetStatus"]:
        """The only legal successor, or None for the terminal status."""
        if self is AssetStatus.RECYCLED:
            return None
        return AssetStatus(self.value + 1)

    @classmethod
    def parse(cls, value: "str | int | AssetStatus") -> "AssetStatus":
        """Accept a numeric code, a numeric string, or a (case-insensitive) name."""
        if isinstance(value, AssetStatus):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown asset status: {value!r}") from None


class Asset(BaseModel):
    """
    Read-only snapshot of an asset.

    Snapshots may be stale. Re-fetch before making correctness decisions.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1, description="Ledger-assigned identifier, immutable")
    serial_number: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    status: AssetStatus = AssetStatus.REGISTERED
    owner: str = Field(..., description="Actor address currently controlling the asset")

    evidence_ref: Optional[str] = Field(
        default=None,
        description="Content hash of the sanitization proof. Set iff status >= SANITIZED."
    )
    technician: Optional[str] = Field(
        default=None,
        description="Actor who recorded the sanitization"
    )
    carbon_credits: int = Field(default=0, ge=0)

    registration_time: datetime
    sanitization_time: Optional[datetime] = None
    recycling_time: Optional[datetime] = None


class TransitionRecord(BaseModel):
    """One entry in an asset's transition trail."""
    model_config = ConfigDict(frozen=True)

    transition: EventType
    status: AssetStatus
    actor: str
    timestamp: datetime
    evidence_ref: Optional[str] = None
    new_owner: Optional[str] = None
    transaction_id: str
    event_hash: str
    sequence_number: int


class TransitionReceipt(BaseModel):
    """Proof that a lifecycle transition was durably committed."""
    model_config = ConfigDict(frozen=True)

    asset_id: int
    transition: EventType
    status: AssetStatus
    actor: str
    evidence_ref: Optional[str] = None
    transaction_id: str
    event_hash: str
    sequence_number: int
    committed_at: datetime


class AssetHistory(BaseModel):
    """An asset snapshot with its full, chronological transition trail."""
    asset: Asset
    transitions: list[TransitionRecord]


class StatusPage(BaseModel):
    """
    One page of a status query.

    as_of is the snapshot marker: pass it back when fetching later pages so
    membership is evaluated against the same point in the ledger.
    """
    status: AssetStatus
    asset_ids: list[int]
    offset: int
    limit: int
    total: int
    as_of: int
    next_offset: Optional[int] = None
