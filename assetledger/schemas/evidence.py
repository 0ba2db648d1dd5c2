"""
Sanitization Evidence Schema

The proof document uploaded to the evidence store before a sanitization is
recorded. The ledger only keeps its content hash.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SanitizationReport(BaseModel):
    """
    A data-wipe report for one asset.

    Serialized canonically, so identical reports always map to the same
    evidence reference.
    """
    asset_id: int = Field(..., ge=1)
    serial_number: str = Field(..., min_length=1)
    sanitization_method: str = Field(
        ...,
        min_length=1,
        description="e.g. 'purge: cryptographic erase', 'clear: single-pass overwrite'"
    )
    operator: str = Field(..., min_length=1, description="Technician performing the wipe")
    verification_hash: str = Field(
        ...,
        min_length=1,
        description="Hash of the wipe tool's verification log"
    )
    performed_at: datetime
    standard: str = "NIST SP 800-88 Rev. 1"
    notes: Optional[str] = None
    version: str = "1.0"

    class Config:
        json_schema_extra = {
            "example": {
                "asset_id": 1,
                "serial_number": "SN-001",
                "sanitization_method": "purge: cryptographic erase",
                "operator": "0x9f2c7d1e4b5a6c3d8e0f1a2b3c4d5e6f7a8b9c0d",
                "verification_hash": "5d41402abc4b2a76b9719d911017c592",
                "performed_at": "2026-03-15T14:30:00Z",
                "standard": "NIST SP 800-88 Rev. 1",
                "version": "1.0",
            }
        }


class EvidenceUploadResult(BaseModel):
    evidence_ref: str
    size: int
