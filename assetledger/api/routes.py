"""
API Routes for the Asset Lifecycle Ledger

Command endpoints (append-only, no PATCH/PUT/DELETE):
- POST /api/assets                        - Register an asset
- POST /api/assets/bulk                   - Register many assets
- POST /api/assets/{id}/sanitization      - Record sanitization evidence
- POST /api/assets/{id}/recycle           - Recycle a sanitized asset
- POST /api/assets/{id}/transfer          - Transfer ownership
- POST /api/transactions/digest           - Digest a client must sign
- POST /api/evidence                      - Upload a sanitization report

Query endpoints (projections):
- GET /api/assets?status=&offset=&limit=&as_of=
- GET /api/assets/stats/overview
- GET /api/assets/check-serial/{serial}
- GET /api/assets/{id}
- GET /api/assets/{id}/history
- GET /api/evidence/{ref}

Every write request carries the actor's public key and an Ed25519
signature over the transaction digest returned by /api/transactions/digest.
Ledger errors are rendered by the handler in main.py as
{"success": false, "error": {"code", "message", "retryable"}}.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from ..core import (
    BulkItem,
    EvidenceStore,
    InvalidInput,
    LedgerService,
    PresignedWallet,
    SignatureBundleWallet,
    Signer,
    bulk_register,
)
from ..core.bulk import MAX_BATCH_SIZE
from ..observability import actor_id_var, get_logger
from ..schemas import (
    AssetStatus,
    EventType,
    EvidenceUploadResult,
    SanitizationReport,
    TransitionReceipt,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Assets"])


# ============================================================
# Dependency Injection
# ============================================================

def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_evidence_store(request: Request) -> EvidenceStore:
    store = getattr(request.app.state, "evidence_store", None)
    if store is None:
        raise InvalidInput("No evidence store is configured")
    return store


# ============================================================
# Request Models
# ============================================================

class SignedRequest(BaseModel):
    public_key: str = Field(..., min_length=1, description="Base64 Ed25519 public key")
    signature: str = Field(..., min_length=1, description="Base64 signature over the digest")

    def wallet(self) -> PresignedWallet:
        wallet = PresignedWallet(self.public_key, self.signature)
        actor_id_var.set(wallet.identity())
        return wallet


class RegisterRequest(SignedRequest):
    serial_number: str
    model: str


class SanitizationRequest(SignedRequest):
    evidence_ref: str = ""


class RecycleRequest(SignedRequest):
    pass


class TransferRequest(SignedRequest):
    new_owner: str


class BulkRegisterItem(BaseModel):
    serial_number: str
    model: str
    signature: str = ""


class BulkRegisterRequest(BaseModel):
    public_key: str = Field(..., min_length=1)
    items: list[BulkRegisterItem] = Field(..., max_length=MAX_BATCH_SIZE)
    skip_duplicates: bool = True
    continue_on_error: bool = True
    validate_only: bool = False


class DigestRequest(BaseModel):
    action: EventType
    public_key: Optional[str] = None
    actor: Optional[str] = None
    asset_id: Optional[int] = None
    serial_number: Optional[str] = None
    model: Optional[str] = None
    evidence_ref: Optional[str] = None
    new_owner: Optional[str] = None


def _receipt(receipt: TransitionReceipt) -> dict[str, Any]:
    return {"success": True, "receipt": receipt.model_dump(mode="json")}


# ============================================================
# Commands
# ============================================================

@router.post("/assets", status_code=201)
def register_asset(req: RegisterRequest, ledger: LedgerService = Depends(get_ledger)):
    """Register a new asset. Only the contract owner may call this."""
    receipt = ledger.register(req.serial_number, req.model, req.wallet())
    return _receipt(receipt)


@router.post("/assets/bulk")
def register_assets_bulk(req: BulkRegisterRequest, ledger: LedgerService = Depends(get_ledger)):
    """
    Register many assets. Each item carries its own signature over its
    register digest; results are reported per item.
    """
    try:
        actor = Signer.address_for(req.public_key)
    except ValueError as e:
        raise InvalidInput(f"public_key is not valid base64: {e}") from e
    actor_id_var.set(actor)

    signatures = {}
    for item in req.items:
        if item.signature:
            payload = ledger.prepare_transaction(
                EventType.ASSET_REGISTERED, actor,
                serial_number=item.serial_number, model=item.model,
            )
            signatures[payload.digest()] = item.signature

    summary = bulk_register(
        ledger,
        [BulkItem(serial_number=i.serial_number, model=i.model) for i in req.items],
        SignatureBundleWallet(req.public_key, signatures),
        skip_duplicates=req.skip_duplicates,
        continue_on_error=req.continue_on_error,
        validate_only=req.validate_only,
    )
    return {"success": summary.failed == 0, "summary": summary.model_dump(mode="json")}


@router.post("/assets/{asset_id}/sanitization")
def record_sanitization(
    asset_id: int, req: SanitizationRequest, ledger: LedgerService = Depends(get_ledger)
):
    """Attach sanitization evidence and mark the asset Sanitized."""
    receipt = ledger.record_sanitization(asset_id, req.evidence_ref, req.wallet())
    return _receipt(receipt)


@router.post("/assets/{asset_id}/recycle")
def recycle_asset(asset_id: int, req: RecycleRequest, ledger: LedgerService = Depends(get_ledger)):
    receipt = ledger.recycle_asset(asset_id, req.wallet())
    return _receipt(receipt)


@router.post("/assets/{asset_id}/transfer")
def transfer_ownership(
    asset_id: int, req: TransferRequest, ledger: LedgerService = Depends(get_ledger)
):
    receipt = ledger.transfer_ownership(asset_id, req.new_owner, req.wallet())
    return _receipt(receipt)


@router.post("/transactions/digest", tags=["Transactions"])
def transaction_digest(req: DigestRequest, ledger: LedgerService = Depends(get_ledger)):
    """
    The canonical payload and digest for an intended action.

    Sign the digest with the actor's key and send it back with the command.
    Digests of actions on an asset change once the asset moves on, so fetch
    a fresh one for every command.
    """
    actor = req.actor
    if req.public_key:
        try:
            actor = Signer.address_for(req.public_key)
        except ValueError as e:
            raise InvalidInput(f"public_key is not valid base64: {e}") from e
    if not actor:
        raise InvalidInput("actor or public_key is required")

    payload = ledger.prepare_transaction(
        req.action,
        actor,
        asset_id=req.asset_id,
        serial_number=req.serial_number,
        model=req.model,
        evidence_ref=req.evidence_ref,
        new_owner=req.new_owner,
    )
    return {
        "success": True,
        "payload": payload.model_dump(mode="json"),
        "digest": payload.digest(),
    }


@router.post("/evidence", status_code=201, tags=["Evidence"])
def upload_evidence(
    report: SanitizationReport,
    store: EvidenceStore = Depends(get_evidence_store),
):
    """Store a sanitization report and return its content-addressed reference."""
    ref = store.put_report(report)
    logger.info("Sanitization report stored", evidence_ref=ref, asset_id=report.asset_id)
    result = EvidenceUploadResult(evidence_ref=ref, size=len(store.get(ref)))
    return {"success": True, **result.model_dump()}


@router.get("/evidence/{ref}", tags=["Evidence"])
def get_evidence(ref: str, store: EvidenceStore = Depends(get_evidence_store)):
    return Response(content=store.get(ref), media_type="application/json")


# ============================================================
# Queries
# ============================================================

@router.get("/assets")
def list_assets(
    status: str = Query(..., description="Registered | Sanitized | Recycled, or 0 | 1 | 2"),
    offset: int = Query(0, description="Requires as_of when > 0"),
    limit: int = Query(10),
    as_of: Optional[int] = Query(None, description="Snapshot marker from a previous page"),
    ledger: LedgerService = Depends(get_ledger),
):
    page = ledger.query_by_status(status, offset=offset, limit=limit, as_of=as_of)
    return {"success": True, **page.model_dump(mode="json")}


@router.get("/assets/stats/overview")
def stats_overview(ledger: LedgerService = Depends(get_ledger)):
    counts = ledger.status_counts()
    return {
        "success": True,
        "total_assets": ledger.total_assets(),
        "by_status": {status.label: counts[status] for status in AssetStatus},
        "event_count": ledger.event_count,
        "last_event_hash": ledger.last_event_hash,
    }


@router.get("/assets/check-serial/{serial_number}")
def check_serial(serial_number: str, ledger: LedgerService = Depends(get_ledger)):
    return {
        "success": True,
        "serial_number": serial_number,
        "exists": ledger.serial_number_exists(serial_number),
        "asset_id": ledger.asset_id_for_serial(serial_number),
    }


@router.get("/assets/{asset_id}")
def get_asset(asset_id: int, ledger: LedgerService = Depends(get_ledger)):
    asset = ledger.get_asset(asset_id)
    return {"success": True, "asset": asset.model_dump(mode="json")}


@router.get("/assets/{asset_id}/history")
def get_history(asset_id: int, ledger: LedgerService = Depends(get_ledger)):
    history = ledger.get_history(asset_id)
    return {"success": True, **history.model_dump(mode="json")}
