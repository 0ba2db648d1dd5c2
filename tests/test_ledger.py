"""
Tests for the Asset Lifecycle Ledger

Demonstrates the complete asset lifecycle:
1. Register an asset (contract owner)
2. Record sanitization evidence (technician)
3. Recycle the asset
4. Transfer ownership
5. Page through assets by status
"""

import random

import pytest

from assetledger.core import (
    AssetNotFound,
    DuplicateSerialNumber,
    EvidenceNotFound,
    InvalidInput,
    InvalidTransition,
    LedgerService,
    MissingEvidence,
    NetworkError,
    PresignedWallet,
    Reverted,
    Signer,
    TransportTimeout,
    Unauthorized,
    UserRejected,
    WalletSigner,
)
from assetledger.observability import get_metrics
from assetledger.schemas import (
    AssetStatus,
    EventType,
    SanitizationReport,
    TransactionAuthorization,
)


class ForgedWallet(WalletSigner):
    """Claims one identity but signs with an unrelated key."""

    def __init__(self, claimed_identity: str):
        self._claimed = claimed_identity
        self._private, self._public = Signer.generate_keypair()

    def identity(self) -> str:
        return self._claimed

    def authorize(self, payload):
        digest = payload.digest()
        return TransactionAuthorization(
            actor=self._claimed,
            public_key=self._public,
            digest=digest,
            signature=Signer.sign(digest, self._private),
        )


def _sanitized_asset(ledger, owner, technician, serial="SN-001", ref="bafy123") -> int:
    asset_id = ledger.register(serial, "Dell 7090", owner).asset_id
    ledger.record_sanitization(asset_id, ref, technician)
    return asset_id


class TestLifecycleScenario:
    """register -> sanitize -> recycle, end to end."""

    def test_full_lifecycle(self, ledger, owner, technician):
        receipt = ledger.register("SN-001", "Dell 7090", owner)
        assert receipt.asset_id == 1
        assert receipt.status == AssetStatus.REGISTERED
        assert ledger.get_asset(1).status == AssetStatus.REGISTERED

        with pytest.raises(MissingEvidence):
            ledger.record_sanitization(1, "", technician)

        with pytest.raises(InvalidTransition):
            ledger.recycle_asset(1, technician)

        receipt = ledger.record_sanitization(1, "bafy123", technician)
        asset = ledger.get_asset(1)
        assert receipt.status == AssetStatus.SANITIZED
        assert asset.status == AssetStatus.SANITIZED
        assert asset.evidence_ref == "bafy123"
        assert asset.technician == technician.identity()
        assert asset.sanitization_time is not None

        receipt = ledger.recycle_asset(1, technician)
        asset = ledger.get_asset(1)
        assert receipt.status == AssetStatus.RECYCLED
        assert asset.status == AssetStatus.RECYCLED
        assert asset.recycling_time is not None
        assert asset.carbon_credits == 10

    def test_receipts_carry_transport_and_chain_proof(self, ledger, owner, transport):
        receipt = ledger.register("SN-001", "Dell 7090", owner)

        tx_id, transition = transport.transactions[0]
        assert receipt.transaction_id == tx_id
        assert tx_id.startswith("0x")
        assert transition.idempotency_key == transition.authorization.digest
        assert receipt.sequence_number == 0
        assert receipt.event_hash == ledger.last_event_hash
        assert receipt.actor == owner.identity()

    def test_history_is_chronological(self, ledger, owner, technician, clock):
        ledger.register("SN-001", "Dell 7090", owner)
        clock.advance(60)
        ledger.record_sanitization(1, "bafy123", technician)
        clock.advance(60)
        ledger.recycle_asset(1, technician)

        history = ledger.get_history(1)
        assert [t.transition for t in history.transitions] == [
            EventType.ASSET_REGISTERED,
            EventType.ASSET_SANITIZED,
            EventType.ASSET_RECYCLED,
        ]
        assert [t.status for t in history.transitions] == [
            AssetStatus.REGISTERED, AssetStatus.SANITIZED, AssetStatus.RECYCLED,
        ]
        timestamps = [t.timestamp for t in history.transitions]
        assert timestamps == sorted(timestamps)
        assert [t.evidence_ref for t in history.transitions] == [None, "bafy123", None]
        assert history.asset.sanitization_time == timestamps[1]
        assert history.asset.recycling_time == timestamps[2]

    def test_history_of_unknown_asset(self, ledger):
        with pytest.raises(AssetNotFound):
            ledger.get_history(42)


class TestRegistration:

    def test_ids_are_sequential(self, ledger, owner):
        ids = [ledger.register(f"SN-{i}", "ThinkPad T14", owner).asset_id for i in range(3)]
        assert ids == [1, 2, 3]
        assert ledger.total_assets() == 3

    def test_only_contract_owner_registers(self, ledger, technician, transport):
        with pytest.raises(Unauthorized):
            ledger.register("SN-001", "Dell 7090", technician)
        assert transport.submit_count == 0
        assert ledger.total_assets() == 0

    def test_administrator_may_register(self, owner, technician):
        ledger = LedgerService(contract_owner=owner.identity(),
                               administrators=[technician.identity()])
        assert ledger.register("SN-001", "Dell 7090", technician).asset_id == 1
        assert ledger.get_asset(1).owner == technician.identity()

    def test_ledger_without_owner_rejects_registration(self, owner):
        ledger = LedgerService()
        with pytest.raises(Unauthorized):
            ledger.register("SN-001", "Dell 7090", owner)

    def test_duplicate_serial_number(self, ledger, owner):
        ledger.register("SN-001", "Dell 7090", owner)
        with pytest.raises(DuplicateSerialNumber) as exc_info:
            ledger.register("SN-001", "HP EliteBook", owner)
        assert exc_info.value.existing_asset_id == 1
        assert ledger.total_assets() == 1

    def test_duplicate_after_recycling(self, ledger, owner, technician):
        """Serial numbers stay taken for the life of the ledger."""
        asset_id = _sanitized_asset(ledger, owner, technician)
        ledger.recycle_asset(asset_id, technician)
        with pytest.raises(DuplicateSerialNumber):
            ledger.register("SN-001", "Dell 7090", owner)

    def test_serial_number_is_trimmed(self, ledger, owner):
        ledger.register("  SN-001 ", "Dell 7090", owner)
        assert ledger.get_asset(1).serial_number == "SN-001"
        assert ledger.serial_number_exists("SN-001")
        with pytest.raises(DuplicateSerialNumber):
            ledger.register("SN-001", "Dell 7090", owner)

    @pytest.mark.parametrize("serial,model", [("", "Dell"), ("SN-1", ""), ("   ", "Dell"), (None, "Dell")])
    def test_empty_fields_rejected(self, ledger, owner, serial, model):
        with pytest.raises(InvalidInput):
            ledger.register(serial, model, owner)

    def test_failed_registration_does_not_consume_an_id(self, ledger, owner):
        owner.reject_next()
        with pytest.raises(UserRejected):
            ledger.register("SN-001", "Dell 7090", owner)

        assert ledger.register("SN-001", "Dell 7090", owner).asset_id == 1
        assert ledger.event_count == 1

    def test_evidence_is_none_until_sanitized(self, ledger, owner):
        ledger.register("SN-001", "Dell 7090", owner)
        asset = ledger.get_asset(1)
        assert asset.evidence_ref is None
        assert asset.sanitization_time is None
        assert asset.recycling_time is None
        assert asset.carbon_credits == 0


class TestSanitization:

    @pytest.mark.parametrize("ref", ["", "   ", None])
    def test_missing_evidence(self, ledger, owner, technician, ref):
        ledger.register("SN-001", "Dell 7090", owner)
        with pytest.raises(MissingEvidence):
            ledger.record_sanitization(1, ref, technician)
        assert ledger.get_asset(1).status == AssetStatus.REGISTERED

    def test_unknown_asset(self, ledger, technician):
        with pytest.raises(AssetNotFound):
            ledger.record_sanitization(99, "bafy123", technician)

    def test_non_integer_asset_id(self, ledger, technician):
        with pytest.raises(InvalidInput):
            ledger.record_sanitization("1", "bafy123", technician)

    def test_evidence_is_write_once(self, ledger, owner, technician):
        _sanitized_asset(ledger, owner, technician, ref="bafy-first")
        with pytest.raises(InvalidTransition):
            ledger.record_sanitization(1, "bafy-second", technician)
        assert ledger.get_asset(1).evidence_ref == "bafy-first"

    def test_verified_evidence_must_resolve(self, verifying_ledger, evidence_store, owner, technician):
        verifying_ledger.register("SN-001", "Dell 7090", owner)

        with pytest.raises(EvidenceNotFound):
            verifying_ledger.record_sanitization(1, "bafy-unknown", technician)

        ref = evidence_store.put_report(SanitizationReport(
            asset_id=1,
            serial_number="SN-001",
            sanitization_method="purge: cryptographic erase",
            operator=technician.identity(),
            verification_hash="5d41402abc4b2a76b9719d911017c592",
            performed_at=verifying_ledger.get_asset(1).registration_time,
        ))
        receipt = verifying_ledger.record_sanitization(1, ref, technician)
        assert receipt.evidence_ref == ref

    def test_evidence_not_found_is_a_missing_evidence_error(self):
        assert issubclass(EvidenceNotFound, MissingEvidence)


class TestRecycling:

    def test_recycle_registered_asset_fails(self, ledger, owner, technician):
        ledger.register("SN-001", "Dell 7090", owner)
        with pytest.raises(InvalidTransition):
            ledger.recycle_asset(1, technician)

    def test_recycle_twice_by_another_actor_fails(self, ledger, owner, technician, recycler):
        asset_id = _sanitized_asset(ledger, owner, technician)
        ledger.recycle_asset(asset_id, technician)
        with pytest.raises(InvalidTransition):
            ledger.recycle_asset(asset_id, recycler)
        assert ledger.get_asset(asset_id).carbon_credits == 10

    def test_recycle_unknown_asset(self, ledger, technician):
        with pytest.raises(AssetNotFound):
            ledger.recycle_asset(5, technician)


class TestIdempotency:
    """Retries of an already-applied transition return the original receipt."""

    def test_sanitization_retry_returns_same_receipt(self, ledger, owner, technician, transport):
        ledger.register("SN-001", "Dell 7090", owner)
        first = ledger.record_sanitization(1, "bafy123", technician)
        submits = transport.submit_count

        second = ledger.record_sanitization(1, "bafy123", technician)

        assert second == first
        assert transport.submit_count == submits
        assert len(ledger.get_history(1).transitions) == 2
        assert get_metrics().idempotent_replays == 1

    def test_sanitization_retry_by_other_actor_is_rejected(self, ledger, owner, technician, recycler):
        _sanitized_asset(ledger, owner, technician)
        with pytest.raises(InvalidTransition):
            ledger.record_sanitization(1, "bafy123", recycler)

    def test_sanitization_retry_after_window_is_rejected(self, ledger, owner, technician, clock):
        _sanitized_asset(ledger, owner, technician)
        clock.advance(601)
        with pytest.raises(InvalidTransition):
            ledger.record_sanitization(1, "bafy123", technician)

    def test_recycle_retry_returns_same_receipt(self, ledger, owner, technician, clock):
        _sanitized_asset(ledger, owner, technician)
        first = ledger.recycle_asset(1, technician)
        clock.advance(30)
        assert ledger.recycle_asset(1, technician) == first
        assert ledger.get_asset(1).carbon_credits == 10

    def test_network_error_leaves_asset_untouched(self, ledger, owner, technician, transport):
        ledger.register("SN-001", "Dell 7090", owner)
        transport.fail_next(NetworkError("node unreachable"))

        with pytest.raises(NetworkError) as exc_info:
            ledger.record_sanitization(1, "bafy123", technician)
        assert exc_info.value.retryable
        assert ledger.get_asset(1).status == AssetStatus.REGISTERED
        assert get_metrics().transport_failures == 1

        receipt = ledger.record_sanitization(1, "bafy123", technician)
        assert receipt.status == AssetStatus.SANITIZED

    def test_timeout_leaves_asset_untouched(self, ledger, owner, technician, transport):
        _sanitized_asset(ledger, owner, technician)
        transport.fail_next(TransportTimeout("no confirmation"))

        with pytest.raises(TransportTimeout):
            ledger.recycle_asset(1, technician)
        asset = ledger.get_asset(1)
        assert asset.status == AssetStatus.SANITIZED
        assert asset.recycling_time is None

        assert ledger.recycle_asset(1, technician).status == AssetStatus.RECYCLED

    def test_retry_reuses_idempotency_key(self, ledger, owner, technician, transport):
        """A retried submission carries the same key as the failed one."""
        ledger.register("SN-001", "Dell 7090", owner)

        transport.fail_next(NetworkError("flaky"))
        with pytest.raises(NetworkError):
            ledger.record_sanitization(1, "bafy123", technician)
        expected_key = ledger.prepare_transaction(
            EventType.ASSET_SANITIZED, technician.identity(), asset_id=1, evidence_ref="bafy123"
        ).digest()

        ledger.record_sanitization(1, "bafy123", technician)
        assert transport.transactions[-1][1].idempotency_key == expected_key


class TestAuthorization:

    def test_forged_identity_is_rejected(self, ledger, owner, transport):
        with pytest.raises(Unauthorized):
            ledger.register("SN-001", "Dell 7090", ForgedWallet(owner.identity()))
        assert transport.submit_count == 0
        assert ledger.event_count == 0

    def test_signature_over_other_payload_is_rejected(self, ledger, owner, technician):
        ledger.register("SN-001", "Dell 7090", owner)
        private, public = Signer.generate_keypair()
        wrong_digest = ledger.prepare_transaction(
            EventType.ASSET_SANITIZED, Signer.address_for(public), asset_id=1,
            evidence_ref="bafy-other",
        ).digest()

        wallet = PresignedWallet(public, Signer.sign(wrong_digest, private))
        with pytest.raises(Unauthorized):
            ledger.record_sanitization(1, "bafy123", wallet)

    def test_presigned_wallet_round_trip(self, ledger, owner):
        ledger.register("SN-001", "Dell 7090", owner)
        private, public = Signer.generate_keypair()
        address = Signer.address_for(public)
        digest = ledger.prepare_transaction(
            EventType.ASSET_SANITIZED, address, asset_id=1, evidence_ref="bafy123"
        ).digest()

        receipt = ledger.record_sanitization(
            1, "bafy123", PresignedWallet(public, Signer.sign(digest, private))
        )
        assert receipt.actor == address

    def test_user_rejection_commits_nothing(self, ledger, owner, technician, transport):
        ledger.register("SN-001", "Dell 7090", owner)
        technician.reject_next()

        with pytest.raises(UserRejected):
            ledger.record_sanitization(1, "bafy123", technician)
        assert transport.submit_count == 1
        assert ledger.get_asset(1).status == AssetStatus.REGISTERED

    def test_revert_reason_is_surfaced_verbatim(self, ledger, owner, transport):
        transport.fail_next(Reverted("SerialNumber already exists"))
        with pytest.raises(Reverted) as exc_info:
            ledger.register("SN-001", "Dell 7090", owner)
        assert exc_info.value.reason == "SerialNumber already exists"
        assert not exc_info.value.retryable
        assert ledger.total_assets() == 0


class TestTransfer:

    def test_owner_transfers(self, ledger, owner, technician):
        ledger.register("SN-001", "Dell 7090", owner)
        registered = ledger.get_asset(1)

        receipt = ledger.transfer_ownership(1, technician.identity(), owner)

        asset = ledger.get_asset(1)
        assert receipt.transition == EventType.OWNERSHIP_TRANSFERRED
        assert asset.owner == technician.identity()
        assert asset.status == registered.status
        assert asset.registration_time == registered.registration_time
        assert ledger.get_history(1).transitions[-1].new_owner == technician.identity()

    def test_new_owner_may_transfer_previous_may_not(self, ledger, owner, technician, recycler):
        ledger.register("SN-001", "Dell 7090", owner)
        ledger.transfer_ownership(1, technician.identity(), owner)
        ledger.transfer_ownership(1, recycler.identity(), technician)

        with pytest.raises(Unauthorized):
            ledger.transfer_ownership(1, technician.identity(), technician)
        assert ledger.get_asset(1).owner == recycler.identity()

    def test_administrator_may_transfer_any_asset(self, ledger, owner, technician, recycler):
        ledger.register("SN-001", "Dell 7090", owner)
        ledger.transfer_ownership(1, technician.identity(), owner)
        ledger.transfer_ownership(1, recycler.identity(), owner)
        assert ledger.get_asset(1).owner == recycler.identity()

    def test_transfer_allowed_after_recycling(self, ledger, owner, technician, recycler):
        _sanitized_asset(ledger, owner, technician)
        ledger.recycle_asset(1, technician)
        ledger.transfer_ownership(1, recycler.identity(), owner)

        asset = ledger.get_asset(1)
        assert asset.owner == recycler.identity()
        assert asset.status == AssetStatus.RECYCLED

    def test_transfer_to_current_owner_rejected(self, ledger, owner):
        ledger.register("SN-001", "Dell 7090", owner)
        with pytest.raises(InvalidInput):
            ledger.transfer_ownership(1, owner.identity(), owner)

    def test_back_and_forth_transfers_are_distinct_transactions(self, ledger, owner, technician, transport):
        ledger.register("SN-001", "Dell 7090", owner)
        first = ledger.transfer_ownership(1, technician.identity(), owner)
        ledger.transfer_ownership(1, owner.identity(), technician)
        third = ledger.transfer_ownership(1, technician.identity(), owner)

        assert first.transaction_id != third.transaction_id
        assert transport.submit_count == 4

    def test_transfer_unknown_asset(self, ledger, owner, technician):
        with pytest.raises(AssetNotFound):
            ledger.transfer_ownership(3, technician.identity(), owner)


class TestStatusQuery:

    def test_empty_result_is_not_an_error(self, ledger):
        page = ledger.query_by_status(AssetStatus.SANITIZED, 0, 10)
        assert page.asset_ids == []
        assert page.total == 0
        assert page.next_offset is None

    def test_ascending_ids_and_paging(self, ledger, owner):
        for i in range(25):
            ledger.register(f"SN-{i:03d}", "Dell 7090", owner)

        first = ledger.query_by_status(AssetStatus.REGISTERED, 0, 10)
        assert first.asset_ids == list(range(1, 11))
        assert first.total == 25
        assert first.next_offset == 10

        last = ledger.query_by_status(AssetStatus.REGISTERED, 20, 10, as_of=first.as_of)
        assert last.asset_ids == list(range(21, 26))
        assert last.next_offset is None

    def test_pages_are_disjoint_under_concurrent_changes(self, ledger, owner, technician):
        for i in range(30):
            ledger.register(f"SN-{i:03d}", "Dell 7090", owner)
        for asset_id in range(2, 31, 2):
            ledger.record_sanitization(asset_id, f"bafy{asset_id}", technician)

        first = ledger.query_by_status(AssetStatus.SANITIZED, 0, 10)
        snapshot_total = first.total

        # Between pages: a lower-id asset becomes Sanitized, one from the
        # first page moves on, and a brand-new asset is sanitized.
        ledger.record_sanitization(1, "bafy1", technician)
        ledger.recycle_asset(first.asset_ids[0], technician)
        new_id = ledger.register("SN-NEW", "Dell 7090", owner).asset_id
        ledger.record_sanitization(new_id, "bafy-new", technician)

        second = ledger.query_by_status(AssetStatus.SANITIZED, 10, 10, as_of=first.as_of)

        assert set(first.asset_ids).isdisjoint(second.asset_ids)
        assert first.asset_ids + second.asset_ids == sorted(first.asset_ids + second.asset_ids)
        assert len(first.asset_ids) + len(second.asset_ids) == snapshot_total
        assert 1 not in second.asset_ids
        assert new_id not in second.asset_ids

        live = ledger.query_by_status(AssetStatus.SANITIZED, 0, 100)
        assert 1 in live.asset_ids
        assert new_id in live.asset_ids
        assert first.asset_ids[0] not in live.asset_ids

    def test_later_page_requires_snapshot_marker(self, ledger, owner, technician):
        for i in range(20):
            ledger.register(f"SN-{i:03d}", "Dell 7090", owner)
        for asset_id in range(5, 17):
            ledger.record_sanitization(asset_id, f"bafy{asset_id}", technician)

        first = ledger.query_by_status(AssetStatus.SANITIZED, 0, 10)
        assert first.asset_ids == list(range(5, 15))

        ledger.record_sanitization(2, "bafy2", technician)

        with pytest.raises(InvalidInput, match="as_of is required"):
            ledger.query_by_status(AssetStatus.SANITIZED, 10, 10)

        second = ledger.query_by_status(AssetStatus.SANITIZED, 10, 10, as_of=first.as_of)
        assert second.asset_ids == [15, 16]
        assert set(first.asset_ids).isdisjoint(second.asset_ids)

    @pytest.mark.parametrize("status", [AssetStatus.SANITIZED, 1, "1", "Sanitized", "sanitized"])
    def test_status_forms(self, ledger, owner, technician, status):
        _sanitized_asset(ledger, owner, technician)
        assert ledger.query_by_status(status, 0, 10).asset_ids == [1]

    @pytest.mark.parametrize("kwargs", [
        {"status": "Sold"},
        {"status": 7},
        {"status": 0, "offset": -1},
        {"status": 0, "limit": 0},
        {"status": 0, "limit": 101},
        {"status": 0, "as_of": 5},
        {"status": 0, "as_of": -2},
    ])
    def test_invalid_queries(self, ledger, kwargs):
        with pytest.raises(InvalidInput):
            ledger.query_by_status(**kwargs)

    def test_status_counts(self, ledger, owner, technician):
        _sanitized_asset(ledger, owner, technician, serial="SN-1")
        _sanitized_asset(ledger, owner, technician, serial="SN-2")
        ledger.register("SN-3", "Dell 7090", owner)
        ledger.recycle_asset(2, technician)

        assert ledger.status_counts() == {
            AssetStatus.REGISTERED: 1,
            AssetStatus.SANITIZED: 1,
            AssetStatus.RECYCLED: 1,
        }


class TestInvariants:
    """Random operation sequences never break the lifecycle rules."""

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_random_operations(self, owner, technician, recycler, seed):
        rng = random.Random(seed)
        ledger = LedgerService(contract_owner=owner.identity())
        actors = [owner, technician, recycler]

        for _ in range(150):
            op = rng.choice(["register", "sanitize", "recycle", "transfer"])
            actor = rng.choice(actors)
            asset_id = rng.randint(1, max(1, ledger.total_assets()))
            try:
                if op == "register":
                    ledger.register(f"SN-{rng.randint(0, 40)}", "Model X", actor)
                elif op == "sanitize":
                    ledger.record_sanitization(asset_id, rng.choice(["", "bafyA", "bafyB"]), actor)
                elif op == "recycle":
                    ledger.recycle_asset(asset_id, actor)
                else:
                    ledger.transfer_ownership(asset_id, rng.choice(actors).identity(), actor)
            except (InvalidInput, Unauthorized, DuplicateSerialNumber, AssetNotFound,
                    InvalidTransition, MissingEvidence):
                pass

        serials = [ledger.get_asset(i).serial_number for i in range(1, ledger.total_assets() + 1)]
        assert len(serials) == len(set(serials))

        for asset_id in range(1, ledger.total_assets() + 1):
            history = ledger.get_history(asset_id)
            statuses = [t.status for t in history.transitions]
            assert statuses == sorted(statuses)
            distinct = list(dict.fromkeys(statuses))
            assert distinct == list(AssetStatus)[:len(distinct)]

            asset = history.asset
            assert (asset.evidence_ref is None) == (asset.status == AssetStatus.REGISTERED)
            assert (asset.sanitization_time is None) == (asset.status == AssetStatus.REGISTERED)
            assert (asset.recycling_time is None) == (asset.status != AssetStatus.RECYCLED)

        assert ledger.verify_chain_integrity()
