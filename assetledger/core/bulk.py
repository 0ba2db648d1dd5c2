"""
Bulk registration.

Registers many assets through LedgerService.register, one at a time, and
reports a per-item outcome. Each item is its own transition; there is no
all-or-nothing batch.
"""

import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from ..observability import get_logger
from .errors import DuplicateSerialNumber, InvalidInput, LedgerError, Unauthorized
from .ledger import LedgerService
from .wallet import WalletSigner

logger = get_logger(__name__)

MAX_BATCH_SIZE = 500


class BulkItem(BaseModel):
    serial_number: str
    model: str


class BulkItemResult(BaseModel):
    index: int
    serial_number: str
    success: bool
    skipped: bool = False
    asset_id: Optional[int] = None
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class BulkOperationSummary(BaseModel):
    total: int
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    validate_only: bool = False
    aborted: bool = False
    results: list[BulkItemResult] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None


def bulk_register(
    ledger: LedgerService,
    items: list[BulkItem],
    wallet: WalletSigner,
    skip_duplicates: bool = True,
    continue_on_error: bool = True,
    validate_only: bool = False,
    batch_size: int = MAX_BATCH_SIZE,
) -> BulkOperationSummary:
    """
    Register items in order.

    Args:
        skip_duplicates: Report already-registered serial numbers (in the
            ledger or earlier in this batch) as skipped instead of failed
        continue_on_error: Keep going after a failed item; otherwise the
            remaining items are not attempted and the summary is marked aborted
        validate_only: Check inputs, authorization and duplicates without
            signing or submitting anything
        batch_size: Maximum number of items accepted (at most 500)

    Raises:
        InvalidInput: Empty batch or batch larger than batch_size
    """
    if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
        raise InvalidInput(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
    if not items:
        raise InvalidInput("No items to register")
    if len(items) > batch_size:
        raise InvalidInput(f"Batch of {len(items)} items exceeds batch_size {batch_size}")

    started = time.perf_counter()
    summary = BulkOperationSummary(
        total=len(items),
        validate_only=validate_only,
        started_at=datetime.now(timezone.utc),
    )
    seen: set[str] = set()
    actor = wallet.identity()

    for index, item in enumerate(items):
        serial = (item.serial_number or "").strip()
        result = BulkItemResult(index=index, serial_number=serial, success=False)

        try:
            if serial in seen or ledger.serial_number_exists(serial):
                raise DuplicateSerialNumber(serial, ledger.asset_id_for_serial(serial))

            if validate_only:
                if not serial or not (item.model or "").strip():
                    raise InvalidInput("serial_number and model must not be empty")
                if not ledger.is_administrator(actor):
                    raise Unauthorized("Only the contract owner can register assets")
                result.success = True
            else:
                receipt = ledger.register(serial, item.model, wallet)
                result.success = True
                result.asset_id = receipt.asset_id
                result.transaction_id = receipt.transaction_id

        except DuplicateSerialNumber as e:
            result.skipped = skip_duplicates
            result.error_code = e.code
            result.error = str(e)

        except LedgerError as e:
            result.error_code = e.code
            result.error = str(e)

        if result.success:
            seen.add(serial)

        summary.results.append(result)
        if result.success:
            summary.successful += 1
        elif result.skipped:
            summary.skipped += 1
        else:
            summary.failed += 1
            if not continue_on_error:
                summary.aborted = True
                break

    summary.finished_at = datetime.now(timezone.utc)
    summary.duration_ms = round((time.perf_counter() - started) * 1000, 2)

    logger.info(
        "Bulk registration finished",
        total=summary.total,
        successful=summary.successful,
        failed=summary.failed,
        skipped=summary.skipped,
        validate_only=validate_only,
        aborted=summary.aborted,
    )
    return summary
