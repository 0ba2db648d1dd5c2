"""
Ledger Service - The Heart of the System

This is an event-sourced, append-only ledger of IT-asset lifecycles.
Nothing is "edited". Things happen.

An asset moves forward only:

    REGISTERED -> SANITIZED -> RECYCLED

Rules (enforced in code):
- Only the contract owner (or a configured administrator) registers assets
- Serial numbers are unique across all assets, forever
- Sanitization requires an evidence reference and a REGISTERED asset
- Recycling requires a SANITIZED asset
- Evidence refs and timestamps are write-once
- Every transition is signed by the requesting actor's wallet and
  confirmed by the ledger transport before it becomes visible

ARCHITECTURE:
- LedgerService: business rules, authorization, state machine, projections
- WalletSigner: actor identity and transaction signatures
- LedgerTransport: remote confirmation (at-least-once, idempotency keyed)
- EventStore: atomic append, ordering, durability

CONCURRENCY:
- Transitions on the same asset (or registrations of the same serial
  number) are serialized by per-key critical sections
- No lock on in-memory state is held while waiting for the wallet or the
  transport; the commit (event append + projection update) is short
- Readers never block on in-flight transitions
"""

import time
from bisect import insort
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock, RLock
from typing import TYPE_CHECKING, Callable, Generator, Iterable, Optional
from uuid import uuid4

from ..observability import get_logger, get_metrics
from ..schemas import (
    Asset,
    AssetHistory,
    AssetRecycledPayload,
    AssetRegisteredPayload,
    AssetSanitizedPayload,
    AssetStatus,
    EventType,
    LedgerEvent,
    OwnershipTransferredPayload,
    StatusPage,
    TransactionAuthorization,
    TransactionPayload,
    Transition,
    TransitionReceipt,
    TransitionRecord,
)
from .errors import (
    AssetNotFound,
    ChainError,
    DuplicateSerialNumber,
    EvidenceNotFound,
    InvalidInput,
    InvalidTransition,
    LedgerBusy,
    LedgerError,
    MissingEvidence,
    Unauthorized,
)
from .hasher import Hasher
from .locks import KeyedLocks
from .signer import Signer
from .transport import LedgerTransport, LocalChainTransport
from .wallet import WalletSigner

if TYPE_CHECKING:
    from ..config import LedgerConfig
    from ..db.store import EventStore
    from .evidence_store import EvidenceStore

logger = get_logger(__name__)

_PLACEHOLDER_HASH = "0" * 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# PROJECTIONS
# ============================================================

@dataclass
class _AssetRecord:
    """Mutable projection entry for one asset. Never handed out."""
    asset: Asset
    transitions: list[TransitionRecord] = field(default_factory=list)
    receipts: dict[EventType, TransitionReceipt] = field(default_factory=dict)

    @property
    def version(self) -> int:
        return len(self.transitions)


class _StatusIndex:
    """
    Status membership with ledger-sequence spans.

    Each asset enters a status at most once, so one (entered, left) span per
    (status, asset) is enough to answer "who was in status S as of sequence N".
    """

    def __init__(self):
        self._ids: dict[AssetStatus, list[int]] = {s: [] for s in AssetStatus}
        self._spans: dict[AssetStatus, dict[int, list]] = {s: {} for s in AssetStatus}
        self._counts: dict[AssetStatus, int] = {s: 0 for s in AssetStatus}

    def enter(self, status: AssetStatus, asset_id: int, sequence: int) -> None:
        insort(self._ids[status], asset_id)
        self._spans[status][asset_id] = [sequence, None]
        self._counts[status] += 1

    def leave(self, status: AssetStatus, asset_id: int, sequence: int) -> None:
        self._spans[status][asset_id][1] = sequence
        self._counts[status] -= 1

    def members(self, status: AssetStatus, as_of: int) -> list[int]:
        spans = self._spans[status]
        result = []
        for asset_id in self._ids[status]:
            entered, left = spans[asset_id]
            if entered <= as_of and (left is None or left > as_of):
                result.append(asset_id)
        return result

    def count(self, status: AssetStatus) -> int:
        return self._counts[status]


# ============================================================
# LEDGER SERVICE
# ============================================================

class LedgerService:
    """
    The asset lifecycle ledger.

    CHAIN INTEGRITY GUARANTEES:
    - Sequence numbers are gap-free (0, 1, 2, ...)
    - Every event hash covers its payload, attribution and transaction id,
      chained to the previous event hash
    - Events are validated on append AND on load (hash, linkage, signature)

    AUTHORIZATION:
    - Every state change carries a wallet signature over the transaction
      digest; the signing key must hash to the requesting actor's address

    IDEMPOTENCY:
    - A retried sanitization (same asset, evidence ref and actor) or
      recycling (same asset and actor) within idempotency_window_seconds
      returns the original receipt instead of failing
    - Transport submissions carry the transaction digest as idempotency key
    """

    def __init__(
        self,
        event_store: Optional["EventStore"] = None,
        transport: Optional[LedgerTransport] = None,
        contract_owner: Optional[str] = None,
        administrators: Iterable[str] = (),
        evidence_store: Optional["EvidenceStore"] = None,
        verify_evidence: bool = True,
        idempotency_window_seconds: float = 600.0,
        lock_timeout_seconds: float = 5.0,
        carbon_credits_per_recycle: int = 10,
        max_page_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            event_store: Durable log. If None, an InMemoryEventStore is used.
            transport: Remote confirmation channel. Defaults to LocalChainTransport.
            contract_owner: Address allowed to register assets.
            administrators: Additional addresses with owner privileges.
            evidence_store: When set (and verify_evidence is on) evidence refs
                must resolve before sanitization is accepted.
            clock: Source of timezone-aware "now"; injectable for tests.
        """
        if event_store is None:
            from ..db.store import InMemoryEventStore
            event_store = InMemoryEventStore()
        if max_page_size < 1:
            raise ValueError("max_page_size must be >= 1")

        self._event_store = event_store
        self._transport = transport if transport is not None else LocalChainTransport()
        self._evidence_store = evidence_store
        self._verify_evidence = verify_evidence and evidence_store is not None

        self._contract_owner = contract_owner
        self._administrators = frozenset(a for a in administrators if a)
        self._idempotency_window = timedelta(seconds=idempotency_window_seconds)
        self._carbon_credits_per_recycle = carbon_credits_per_recycle
        self._max_page_size = max_page_size
        self._clock = clock

        self._asset_locks = KeyedLocks("asset", lock_timeout_seconds)
        self._serial_locks = KeyedLocks("registration", lock_timeout_seconds)

        # Serializes event append + projection update. Never held across
        # wallet or transport calls.
        self._commit_lock = Lock()
        # Guards the projections below. Held only for dict/list updates.
        self._state_lock = RLock()

        # Projections (source of truth is the EventStore)
        self._assets: dict[int, _AssetRecord] = {}
        self._serials: dict[str, int] = {}
        self._status_index = _StatusIndex()
        self._next_asset_id = 1
        self._event_count = 0
        self._last_sequence = -1
        self._last_hash: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: "LedgerConfig",
        event_store: Optional["EventStore"] = None,
        transport: Optional[LedgerTransport] = None,
        evidence_store: Optional["EvidenceStore"] = None,
    ) -> "LedgerService":
        """
        Build a ledger from LedgerConfig, creating missing collaborators.

        When an event_store is given, its chain is verified and replayed.
        """
        kwargs = dict(
            transport=transport if transport is not None else config.create_transport(),
            contract_owner=config.contract_owner,
            administrators=config.administrators,
            evidence_store=(
                evidence_store if evidence_store is not None
                else config.create_evidence_store()
            ),
            verify_evidence=config.verify_evidence,
            idempotency_window_seconds=config.idempotency_window_seconds,
            lock_timeout_seconds=config.lock_timeout_seconds,
            carbon_credits_per_recycle=config.carbon_credits_per_recycle,
            max_page_size=config.max_page_size,
        )
        if event_store is None:
            return cls(**kwargs)
        return cls.load_from_store(event_store, **kwargs)

    # ================================================================
    # PROPERTIES
    # ================================================================

    @property
    def event_store(self) -> "EventStore":
        return self._event_store

    @property
    def transport(self) -> LedgerTransport:
        return self._transport

    @property
    def evidence_store(self) -> Optional["EvidenceStore"]:
        return self._evidence_store

    @property
    def contract_owner(self) -> Optional[str]:
        return self._contract_owner

    @property
    def max_page_size(self) -> int:
        return self._max_page_size

    @property
    def event_count(self) -> int:
        """Total number of events applied to this ledger."""
        with self._state_lock:
            return self._event_count

    @property
    def last_event_hash(self) -> Optional[str]:
        with self._state_lock:
            return self._last_hash

    @property
    def as_of(self) -> int:
        """Current snapshot marker: sequence of the last committed event (-1 if empty)."""
        with self._state_lock:
            return self._last_sequence

    def is_administrator(self, actor: str) -> bool:
        return bool(actor) and (actor == self._contract_owner or actor in self._administrators)

    # ================================================================
    # TRANSACTION PREPARATION
    # ================================================================

    def prepare_transaction(
        self,
        action: EventType,
        actor: str,
        asset_id: Optional[int] = None,
        serial_number: Optional[str] = None,
        model: Optional[str] = None,
        evidence_ref: Optional[str] = None,
        new_owner: Optional[str] = None,
    ) -> TransactionPayload:
        """
        The deterministic payload a wallet must sign for the given action.

        Clients that sign outside the service (PresignedWallet) fetch this
        first; the operations below build the identical payload.
        """
        asset_version = None
        if asset_id is not None:
            asset_version = self._require_record(asset_id).version
        return TransactionPayload(
            action=action,
            actor=actor,
            asset_id=asset_id,
            asset_version=asset_version,
            serial_number=_clean(serial_number),
            model=_clean(model),
            evidence_ref=_clean(evidence_ref),
            new_owner=_clean(new_owner),
        )

    # ================================================================
    # LIFECYCLE OPERATIONS
    # ================================================================

    def register(self, serial_number: str, model: str, wallet: WalletSigner) -> TransitionReceipt:
        """
        Create a new asset in REGISTERED status, owned by the requesting actor.

        Raises:
            InvalidInput: Empty serial number or model
            Unauthorized: Actor is not the contract owner / an administrator
            DuplicateSerialNumber: Serial number already registered
            UserRejected, TransportTimeout, NetworkError, Reverted, LedgerBusy
        """
        actor = wallet.identity()

        with _tracked("register"):
            serial = _require_text(serial_number, "serial_number")
            model_name = _require_text(model, "model")
            if not self.is_administrator(actor):
                raise Unauthorized("Only the contract owner can register assets")

            with self._serial_locks.hold(serial):
                self._ensure_serial_available(serial)

                payload = self.prepare_transaction(
                    EventType.ASSET_REGISTERED, actor,
                    serial_number=serial, model=model_name,
                )
                authorization, tx_id = self._authorize_and_submit(payload, wallet)

                def build(asset_id: Optional[int], now: datetime):
                    self._ensure_serial_available(serial)
                    new_id = self._next_asset_id
                    return new_id, AssetRegisteredPayload(
                        asset_id=new_id,
                        serial_number=serial,
                        model=model_name,
                        owner=actor,
                        registration_time=now,
                    )

                receipt = self._commit(
                    EventType.ASSET_REGISTERED, None, build, authorization, tx_id
                )

        logger.info(
            "Asset registered",
            asset_id=receipt.asset_id,
            serial_number=serial,
            actor=actor,
            transaction_id=tx_id,
        )
        return receipt

    def record_sanitization(
        self, asset_id: int, evidence_ref: str, wallet: WalletSigner
    ) -> TransitionReceipt:
        """
        Attach sanitization evidence and move REGISTERED -> SANITIZED.

        A retry with the same (asset, evidence ref, actor) inside the
        idempotency window returns the original receipt. A retry that
        arrives while the first attempt is still waiting on the wallet or
        transport for longer than lock_timeout_seconds gets LedgerBusy
        instead; retrying it once the first attempt settles yields the
        original receipt.

        Raises:
            AssetNotFound, MissingEvidence, EvidenceNotFound, InvalidTransition,
            UserRejected, TransportTimeout, NetworkError, Reverted, LedgerBusy
        """
        actor = wallet.identity()

        with _tracked("record_sanitization"):
            asset_id = _require_asset_id(asset_id)
            with self._asset_locks.hold(asset_id):
                record = self._require_record(asset_id)
                ref = _clean(evidence_ref)
                if not ref:
                    raise MissingEvidence("Sanitization requires an evidence reference")

                replay = self._replayable(
                    record, EventType.ASSET_SANITIZED, actor, evidence_ref=ref
                )
                if replay is not None:
                    return replay

                if record.asset.status != AssetStatus.REGISTERED:
                    raise InvalidTransition(
                        f"Asset {asset_id} is {record.asset.status.label}; "
                        "only Registered assets can be sanitized"
                    )

                if self._verify_evidence:
                    self._check_evidence(ref)

                payload = self.prepare_transaction(
                    EventType.ASSET_SANITIZED, actor, asset_id=asset_id, evidence_ref=ref
                )
                authorization, tx_id = self._authorize_and_submit(payload, wallet)

                def build(asset_id: int, now: datetime):
                    self._require_status(asset_id, AssetStatus.REGISTERED)
                    return asset_id, AssetSanitizedPayload(
                        asset_id=asset_id,
                        evidence_ref=ref,
                        technician=actor,
                        sanitization_time=now,
                    )

                receipt = self._commit(
                    EventType.ASSET_SANITIZED, asset_id, build, authorization, tx_id
                )

        logger.info(
            "Asset sanitized",
            asset_id=asset_id,
            evidence_ref=ref,
            actor=actor,
            transaction_id=tx_id,
        )
        return receipt

    def recycle_asset(self, asset_id: int, wallet: WalletSigner) -> TransitionReceipt:
        """
        Move SANITIZED -> RECYCLED and award carbon credits.

        A retry by the same actor inside the idempotency window returns the
        original receipt. A retry that arrives while the first attempt holds
        the asset for longer than lock_timeout_seconds gets LedgerBusy;
        retrying it once the first attempt settles yields the original
        receipt.

        Raises:
            AssetNotFound, InvalidTransition,
            UserRejected, TransportTimeout, NetworkError, Reverted, LedgerBusy
        """
        actor = wallet.identity()

        with _tracked("recycle_asset"):
            asset_id = _require_asset_id(asset_id)
            with self._asset_locks.hold(asset_id):
                record = self._require_record(asset_id)

                replay = self._replayable(record, EventType.ASSET_RECYCLED, actor)
                if replay is not None:
                    return replay

                if record.asset.status != AssetStatus.SANITIZED:
                    raise InvalidTransition(
                        f"Asset {asset_id} is {record.asset.status.label}; "
                        "only Sanitized assets can be recycled"
                    )

                payload = self.prepare_transaction(
                    EventType.ASSET_RECYCLED, actor, asset_id=asset_id
                )
                authorization, tx_id = self._authorize_and_submit(payload, wallet)

                def build(asset_id: int, now: datetime):
                    self._require_status(asset_id, AssetStatus.SANITIZED)
                    return asset_id, AssetRecycledPayload(
                        asset_id=asset_id,
                        recycled_by=actor,
                        carbon_credits=self._carbon_credits_per_recycle,
                        recycling_time=now,
                    )

                receipt = self._commit(
                    EventType.ASSET_RECYCLED, asset_id, build, authorization, tx_id
                )

        logger.info(
            "Asset recycled",
            asset_id=asset_id,
            actor=actor,
            carbon_credits=self._carbon_credits_per_recycle,
            transaction_id=tx_id,
        )
        return receipt

    def transfer_ownership(
        self, asset_id: int, new_owner: str, wallet: WalletSigner
    ) -> TransitionReceipt:
        """
        Hand an asset to another actor. Status is unchanged.

        Allowed for the current owner or an administrator, in any status.

        Raises:
            InvalidInput, AssetNotFound, Unauthorized,
            UserRejected, TransportTimeout, NetworkError, Reverted, LedgerBusy
        """
        actor = wallet.identity()

        with _tracked("transfer_ownership"):
            asset_id = _require_asset_id(asset_id)
            target = _require_text(new_owner, "new_owner")
            with self._asset_locks.hold(asset_id):
                record = self._require_record(asset_id)
                previous_owner = record.asset.owner

                if actor != previous_owner and not self.is_administrator(actor):
                    raise Unauthorized("Only the asset owner or an administrator can transfer it")
                if target == previous_owner:
                    raise InvalidInput(f"Asset {asset_id} is already owned by {target}")

                payload = self.prepare_transaction(
                    EventType.OWNERSHIP_TRANSFERRED, actor,
                    asset_id=asset_id, new_owner=target,
                )
                authorization, tx_id = self._authorize_and_submit(payload, wallet)

                def build(asset_id: int, now: datetime):
                    return asset_id, OwnershipTransferredPayload(
                        asset_id=asset_id,
                        previous_owner=previous_owner,
                        new_owner=target,
                        transferred_by=actor,
                        transfer_time=now,
                    )

                receipt = self._commit(
                    EventType.OWNERSHIP_TRANSFERRED, asset_id, build, authorization, tx_id
                )

        logger.info(
            "Ownership transferred",
            asset_id=asset_id,
            previous_owner=previous_owner,
            new_owner=target,
            actor=actor,
            transaction_id=tx_id,
        )
        return receipt

    # ================================================================
    # READS
    # ================================================================

    def get_asset(self, asset_id: int) -> Asset:
        """Snapshot of one asset. Raises AssetNotFound."""
        return self._require_record(asset_id).asset

    def get_history(self, asset_id: int) -> AssetHistory:
        """The asset snapshot plus every transition it has gone through, oldest first."""
        with self._state_lock:
            record = self._require_record(asset_id)
            return AssetHistory(asset=record.asset, transitions=list(record.transitions))

    def total_assets(self) -> int:
        with self._state_lock:
            return len(self._assets)

    def serial_number_exists(self, serial_number: str) -> bool:
        serial = _clean(serial_number)
        if not serial:
            return False
        with self._state_lock:
            return serial in self._serials

    def asset_id_for_serial(self, serial_number: str) -> Optional[int]:
        with self._state_lock:
            return self._serials.get(_clean(serial_number) or "")

    def status_counts(self) -> dict[AssetStatus, int]:
        with self._state_lock:
            return {status: self._status_index.count(status) for status in AssetStatus}

    def query_by_status(
        self,
        status: "AssetStatus | int | str",
        offset: int = 0,
        limit: int = 10,
        as_of: Optional[int] = None,
    ) -> StatusPage:
        """
        Page through asset ids currently (or as of a snapshot) in a status.

        Ids are returned in ascending order. The first call returns the
        snapshot marker in StatusPage.as_of; later pages must pass it back so
        membership is evaluated against the same point in the ledger. Pages
        then never overlap and never skip an asset because of concurrent
        transitions.

        Raises:
            InvalidInput: Unknown status, negative offset, limit outside
                [1, max_page_size], an as_of marker from the future, or
                offset > 0 without an as_of marker
        """
        try:
            status = AssetStatus.parse(status)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        if offset < 0:
            raise InvalidInput("offset must be >= 0")
        if limit < 1 or limit > self._max_page_size:
            raise InvalidInput(f"limit must be between 1 and {self._max_page_size}")
        if offset > 0 and as_of is None:
            raise InvalidInput(
                "as_of is required when offset > 0; pass back the marker from the first page"
            )

        with self._state_lock:
            head = self._last_sequence
            if as_of is None:
                as_of = head
            elif as_of < -1 or as_of > head:
                raise InvalidInput(
                    f"as_of {as_of} is not a committed ledger position (head is {head})"
                )
            members = self._status_index.members(status, as_of)

        page = members[offset:offset + limit]
        end = offset + limit
        return StatusPage(
            status=status,
            asset_ids=page,
            offset=offset,
            limit=limit,
            total=len(members),
            as_of=as_of,
            next_offset=end if end < len(members) else None,
        )

    def get_events(self) -> list[LedgerEvent]:
        return self._event_store.list_all()

    def get_events_for_asset(self, asset_id: int) -> list[LedgerEvent]:
        return self._event_store.list_for_asset(asset_id)

    # ================================================================
    # INTEGRITY & REPLAY
    # ================================================================

    def verify_chain_integrity(self) -> bool:
        """
        Verify the entire stored chain (sequence, linkage, hashes, signatures).

        This should be run periodically as a health check.
        """
        try:
            self._verify_event_chain(self._event_store.list_all())
        except ChainError as e:
            logger.error("Chain integrity check failed", error=str(e))
            return False
        return True

    @classmethod
    def load_from_events(
        cls,
        events: list[LedgerEvent],
        verify: bool = True,
        **kwargs,
    ) -> "LedgerService":
        """
        Rebuild a ledger by replaying events.

        The chain is verified before any state is accepted, so events injected
        or edited directly in the database are caught here.

        kwargs are passed to the constructor (event_store, transport, ...).

        Raises:
            ChainError: If chain integrity is violated
        """
        ledger = cls(**kwargs)
        sorted_events = sorted(events, key=lambda e: e.sequence_number)

        if verify:
            cls._verify_event_chain(sorted_events)

        for event in sorted_events:
            ledger._apply(event)

        logger.info(
            "Ledger replayed",
            event_count=len(sorted_events),
            asset_count=ledger.total_assets(),
        )
        return ledger

    @classmethod
    def load_from_store(
        cls,
        event_store: "EventStore",
        verify: bool = True,
        **kwargs,
    ) -> "LedgerService":
        """Load a ledger from an EventStore. The recommended production entry point."""
        events = event_store.list_all()
        return cls.load_from_events(events, verify=verify, event_store=event_store, **kwargs)

    @staticmethod
    def _verify_event_chain(events: list[LedgerEvent]) -> None:
        """
        Verify a complete event chain.

        Raises ChainError on the first violation.
        """
        prev_hash = None
        expected_sequence = 0

        for event in events:
            if event.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected_sequence}, got {event.sequence_number}"
                )

            try:
                event.validate_chain_rules()
            except ValueError as e:
                raise ChainError(str(e)) from e

            if event.previous_event_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
                )

            if not Hasher.verify_event_hash(event.chain_body(), event.event_hash, prev_hash):
                raise ChainError(f"Hash verification failed at sequence {expected_sequence}")

            try:
                signer_address = Signer.address_for(event.actor_public_key)
            except ValueError:
                raise ChainError(
                    f"Malformed actor public key at sequence {expected_sequence}"
                ) from None
            if signer_address != event.actor:
                raise ChainError(
                    f"Event {expected_sequence} public key does not belong to actor {event.actor}"
                )
            if not Signer.verify(
                event.transaction_digest, event.actor_signature, event.actor_public_key
            ):
                raise ChainError(f"Invalid actor signature at sequence {expected_sequence}")

            prev_hash = event.event_hash
            expected_sequence += 1

    # ================================================================
    # INTERNALS
    # ================================================================

    def _require_record(self, asset_id: int) -> _AssetRecord:
        with self._state_lock:
            record = self._assets.get(asset_id)
        if record is None:
            raise AssetNotFound(asset_id)
        return record

    def _require_status(self, asset_id: int, status: AssetStatus) -> None:
        current = self._require_record(asset_id).asset.status
        if current != status:
            raise InvalidTransition(
                f"Asset {asset_id} is {current.label}, expected {status.label}"
            )

    def _ensure_serial_available(self, serial: str) -> None:
        with self._state_lock:
            existing = self._serials.get(serial)
        if existing is not None:
            raise DuplicateSerialNumber(serial, existing_asset_id=existing)

    def _check_evidence(self, evidence_ref: str) -> None:
        if not self._evidence_store.exists(evidence_ref):
            raise EvidenceNotFound(f"Evidence {evidence_ref} could not be resolved")

    def _replayable(
        self,
        record: _AssetRecord,
        event_type: EventType,
        actor: str,
        evidence_ref: Optional[str] = None,
    ) -> Optional[TransitionReceipt]:
        """The original receipt if this request repeats a recent transition."""
        with self._state_lock:
            receipt = record.receipts.get(event_type)
        if receipt is None or receipt.actor != actor:
            return None
        if event_type == EventType.ASSET_SANITIZED and receipt.evidence_ref != evidence_ref:
            return None
        if self._clock() - receipt.committed_at > self._idempotency_window:
            return None

        get_metrics().record_replay()
        logger.info(
            "Idempotent retry absorbed",
            asset_id=receipt.asset_id,
            transition=event_type.value,
            actor=actor,
            transaction_id=receipt.transaction_id,
        )
        return receipt

    def _authorize_and_submit(
        self, payload: TransactionPayload, wallet: WalletSigner
    ) -> tuple[TransactionAuthorization, str]:
        """
        Have the wallet sign the payload, verify the signature, submit it.

        Called with the per-key section held but no state lock.
        """
        authorization = wallet.authorize(payload)
        self._verify_authorization(payload, authorization)

        transition = Transition(
            payload=payload,
            authorization=authorization,
            idempotency_key=authorization.digest,
        )
        try:
            tx_id = self._transport.submit(transition)
        except LedgerError as e:
            get_metrics().record_transport_failure()
            logger.warning(
                "Transport submission failed",
                action=payload.action.value,
                asset_id=payload.asset_id,
                error_code=e.code,
                retryable=e.retryable,
                error=str(e),
            )
            raise
        return authorization, tx_id

    @staticmethod
    def _verify_authorization(
        payload: TransactionPayload, authorization: TransactionAuthorization
    ) -> None:
        digest = payload.digest()
        if authorization.actor != payload.actor:
            raise Unauthorized("Authorization was issued for a different actor")
        if authorization.digest != digest:
            raise Unauthorized("Authorization does not cover this transaction")
        try:
            address = Signer.address_for(authorization.public_key)
        except ValueError:
            raise Unauthorized("Authorization public key is malformed") from None
        if address != payload.actor:
            raise Unauthorized("Signing key does not belong to the requesting actor")
        if not Signer.verify(digest, authorization.signature, authorization.public_key):
            raise Unauthorized("Invalid transaction signature")

    def _commit(
        self,
        event_type: EventType,
        asset_id: Optional[int],
        build: Callable,
        authorization: TransactionAuthorization,
        tx_id: str,
    ) -> TransitionReceipt:
        """
        Append the event and apply it to the projections, atomically.

        build(asset_id, now) re-checks preconditions and returns
        (asset_id, payload model). It runs under the commit lock so the
        registration id counter and the chain head cannot move underneath it.
        """
        from ..db.store import EventStoreError, LockTimeoutError

        started = time.perf_counter()

        with self._commit_lock:
            now = self._clock()
            asset_id, payload_model = build(asset_id, now)
            payload = payload_model.model_dump(mode="json")

            try:
                with self._event_store.begin_append() as ctx:
                    head = ctx.head
                    event = LedgerEvent(
                        event_id=uuid4(),
                        sequence_number=head.next_sequence,
                        event_type=event_type,
                        asset_id=asset_id,
                        payload=payload,
                        previous_event_hash=head.last_event_hash,
                        event_hash=_PLACEHOLDER_HASH,
                        actor=authorization.actor,
                        actor_public_key=authorization.public_key,
                        actor_signature=authorization.signature,
                        transaction_digest=authorization.digest,
                        transaction_id=tx_id,
                        created_at=now,
                    )
                    event = event.model_copy(update={
                        "event_hash": Hasher.hash_event(event.chain_body(), head.last_event_hash)
                    })
                    event.validate_chain_rules()
                    ctx.commit(event)
            except ValueError as e:
                raise ChainError(str(e)) from e
            except LockTimeoutError as e:
                raise LedgerBusy(str(e)) from e
            except EventStoreError as e:
                raise ChainError(f"Event store rejected append: {e}") from e

            receipt = self._apply(event)

        get_metrics().record_commit((time.perf_counter() - started) * 1000)
        return receipt

    def _apply(self, event: LedgerEvent) -> TransitionReceipt:
        """
        Fold one committed event into the projections.

        Shared by live commits and replay; an event that is illegal for the
        current state means the log itself is inconsistent.
        """
        with self._state_lock:
            if event.sequence_number != self._last_sequence + 1:
                raise ChainError(
                    f"Out-of-order apply: expected sequence {self._last_sequence + 1}, "
                    f"got {event.sequence_number}"
                )

            seq = event.sequence_number
            etype = event.event_type

            if etype == EventType.ASSET_REGISTERED:
                p = AssetRegisteredPayload.model_validate(event.payload)
                if p.asset_id in self._assets or p.serial_number in self._serials:
                    raise ChainError(f"Duplicate registration at sequence {seq}")
                record = _AssetRecord(asset=Asset(
                    id=p.asset_id,
                    serial_number=p.serial_number,
                    model=p.model,
                    owner=p.owner,
                    status=AssetStatus.REGISTERED,
                    registration_time=p.registration_time,
                ))
                self._assets[p.asset_id] = record
                self._serials[p.serial_number] = p.asset_id
                self._next_asset_id = max(self._next_asset_id, p.asset_id + 1)
                self._status_index.enter(AssetStatus.REGISTERED, p.asset_id, seq)
                new_owner = None

            else:
                record = self._assets.get(event.asset_id)
                if record is None:
                    raise ChainError(f"Event {seq} references unknown asset {event.asset_id}")
                asset = record.asset
                new_owner = None

                if etype == EventType.ASSET_SANITIZED:
                    p = AssetSanitizedPayload.model_validate(event.payload)
                    self._advance(record, AssetStatus.SANITIZED, seq)
                    record.asset = asset.model_copy(update={
                        "status": AssetStatus.SANITIZED,
                        "evidence_ref": p.evidence_ref,
                        "technician": p.technician,
                        "sanitization_time": p.sanitization_time,
                    })
                elif etype == EventType.ASSET_RECYCLED:
                    p = AssetRecycledPayload.model_validate(event.payload)
                    self._advance(record, AssetStatus.RECYCLED, seq)
                    record.asset = asset.model_copy(update={
                        "status": AssetStatus.RECYCLED,
                        "carbon_credits": asset.carbon_credits + p.carbon_credits,
                        "recycling_time": p.recycling_time,
                    })
                elif etype == EventType.OWNERSHIP_TRANSFERRED:
                    p = OwnershipTransferredPayload.model_validate(event.payload)
                    record.asset = asset.model_copy(update={"owner": p.new_owner})
                    new_owner = p.new_owner
                else:
                    raise ChainError(f"Unknown event type at sequence {seq}: {etype}")

            asset = record.asset
            evidence_ref = asset.evidence_ref if etype == EventType.ASSET_SANITIZED else None

            record.transitions.append(TransitionRecord(
                transition=etype,
                status=asset.status,
                actor=event.actor,
                timestamp=event.created_at,
                evidence_ref=evidence_ref,
                new_owner=new_owner,
                transaction_id=event.transaction_id,
                event_hash=event.event_hash,
                sequence_number=seq,
            ))
            receipt = TransitionReceipt(
                asset_id=asset.id,
                transition=etype,
                status=asset.status,
                actor=event.actor,
                evidence_ref=evidence_ref,
                transaction_id=event.transaction_id,
                event_hash=event.event_hash,
                sequence_number=seq,
                committed_at=event.created_at,
            )
            record.receipts[etype] = receipt

            self._event_count += 1
            self._last_sequence = seq
            self._last_hash = event.event_hash

        return receipt

    def _advance(self, record: _AssetRecord, target: AssetStatus, sequence: int) -> None:
        current = record.asset.status
        if current.next_status() != target:
            raise ChainError(
                f"Illegal transition {current.label} -> {target.label} "
                f"for asset {record.asset.id} at sequence {sequence}"
            )
        self._status_index.leave(current, record.asset.id, sequence)
        self._status_index.enter(target, record.asset.id, sequence)


# ============================================================
# HELPERS
# ============================================================

@contextmanager
def _tracked(operation: str) -> Generator[None, None, None]:
    """Count rejected operations in the metrics collector."""
    try:
        yield
    except LedgerError as e:
        get_metrics().record_failure(e.code)
        logger.info(
            "Operation rejected",
            operation=operation,
            error_code=e.code,
            error=str(e),
        )
        raise


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _require_text(value: Optional[str], name: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise InvalidInput(f"{name} must not be empty")
    return cleaned


def _require_asset_id(asset_id) -> int:
    if isinstance(asset_id, bool) or not isinstance(asset_id, int):
        raise InvalidInput(f"asset_id must be an integer, got {asset_id!r}")
    if asset_id < 1:
        raise AssetNotFound(asset_id)
    return asset_id
