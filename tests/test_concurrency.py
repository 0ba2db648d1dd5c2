"""
Concurrency tests.

Transitions on one asset are serialized; transitions on different assets
proceed in parallel; readers never observe a half-applied transition.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from assetledger.core import (
    DuplicateSerialNumber,
    InvalidTransition,
    KeyWallet,
    LedgerBusy,
    LedgerService,
    LocalChainTransport,
)
from assetledger.schemas import AssetStatus


def _run_all(fn, args_list, workers=8):
    """Run fn over args_list concurrently; return (results, errors)."""
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        try:
            return fn(*args), None
        except Exception as e:
            return None, e

    with ThreadPoolExecutor(max_workers=max(workers, len(args_list))) as pool:
        outcomes = list(pool.map(call, args_list))
    return [r for r, _ in outcomes if r is not None], [e for _, e in outcomes if e is not None]


class TestSerialization:

    def test_same_serial_registered_once(self, ledger, owner):
        results, errors = _run_all(
            ledger.register, [("SN-RACE", f"Model {i}", owner) for i in range(8)]
        )

        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(e, DuplicateSerialNumber) for e in errors)
        assert ledger.total_assets() == 1

    def test_distinct_serials_get_distinct_ids(self, ledger, owner):
        results, errors = _run_all(
            ledger.register, [(f"SN-{i}", "Model", owner) for i in range(16)]
        )

        assert errors == []
        assert sorted(r.asset_id for r in results) == list(range(1, 17))
        assert ledger.verify_chain_integrity()

    def test_competing_sanitizations_one_wins(self, ledger, owner):
        ledger.register("SN-001", "Dell 7090", owner)
        technicians = [KeyWallet.generate() for _ in range(6)]

        results, errors = _run_all(
            ledger.record_sanitization,
            [(1, f"bafy-{i}", tech) for i, tech in enumerate(technicians)],
        )

        assert len(results) == 1
        assert all(isinstance(e, InvalidTransition) for e in errors)
        asset = ledger.get_asset(1)
        assert asset.evidence_ref == results[0].evidence_ref
        assert asset.technician == results[0].actor
        assert len(ledger.get_history(1).transitions) == 2

    def test_identical_retries_collapse_to_one_transition(self, ledger, owner, technician):
        ledger.register("SN-001", "Dell 7090", owner)

        results, errors = _run_all(
            ledger.record_sanitization, [(1, "bafy123", technician)] * 5
        )

        assert errors == []
        assert len({r.transaction_id for r in results}) == 1
        assert len(ledger.get_history(1).transitions) == 2

    def test_independent_assets_progress_in_parallel(self, owner, technician):
        ledger = LedgerService(
            transport=LocalChainTransport(delay_seconds=0.05),
            contract_owner=owner.identity(),
        )
        for i in range(8):
            ledger.register(f"SN-{i}", "Model", owner)

        results, errors = _run_all(
            ledger.record_sanitization,
            [(i, f"bafy{i}", technician) for i in range(1, 9)],
        )

        assert errors == []
        assert ledger.status_counts()[AssetStatus.SANITIZED] == 8
        assert ledger.verify_chain_integrity()


class TestLockTimeout:

    def test_busy_asset_reports_ledger_busy(self, owner, technician):
        ledger = LedgerService(
            transport=LocalChainTransport(delay_seconds=0.5),
            contract_owner=owner.identity(),
            lock_timeout_seconds=0.05,
        )
        ledger.register("SN-001", "Dell 7090", owner)

        started = threading.Event()
        outcome = {}

        def slow_sanitize():
            started.set()
            outcome["receipt"] = ledger.record_sanitization(1, "bafy123", technician)

        worker = threading.Thread(target=slow_sanitize)
        worker.start()
        started.wait()

        # Let the worker enter the asset section first.
        time.sleep(0.1)
        with pytest.raises(LedgerBusy) as exc_info:
            ledger.recycle_asset(1, technician)
        assert exc_info.value.retryable

        worker.join()
        assert outcome["receipt"].status == AssetStatus.SANITIZED

    def test_retry_during_slow_attempt_is_busy_then_idempotent(self, owner, technician):
        ledger = LedgerService(
            transport=LocalChainTransport(delay_seconds=0.5),
            contract_owner=owner.identity(),
            lock_timeout_seconds=0.05,
        )
        ledger.register("SN-001", "Dell 7090", owner)

        started = threading.Event()
        outcome = {}

        def first_attempt():
            started.set()
            outcome["receipt"] = ledger.record_sanitization(1, "bafy123", technician)

        worker = threading.Thread(target=first_attempt)
        worker.start()
        started.wait()

        time.sleep(0.1)
        with pytest.raises(LedgerBusy):
            ledger.record_sanitization(1, "bafy123", technician)

        worker.join()
        retry = ledger.record_sanitization(1, "bafy123", technician)
        assert retry.transaction_id == outcome["receipt"].transaction_id
        assert ledger.get_asset(1).status == AssetStatus.SANITIZED
        assert len(ledger.get_history(1).transitions) == 2

    def test_busy_asset_does_not_block_other_assets(self, owner, technician):
        ledger = LedgerService(
            transport=LocalChainTransport(delay_seconds=0.3),
            contract_owner=owner.identity(),
            lock_timeout_seconds=0.05,
        )
        ledger.register("SN-001", "Dell 7090", owner)
        ledger.register("SN-002", "Dell 7090", owner)

        worker = threading.Thread(
            target=ledger.record_sanitization, args=(1, "bafy1", technician)
        )
        worker.start()
        time.sleep(0.05)

        assert ledger.record_sanitization(2, "bafy2", technician).status == AssetStatus.SANITIZED
        worker.join()


class TestReaders:

    def test_readers_see_consistent_snapshots(self, ledger, owner, technician):
        for i in range(20):
            ledger.register(f"SN-{i}", "Model", owner)

        stop = threading.Event()
        violations = []

        def reader():
            while not stop.is_set():
                for asset_id in range(1, 21):
                    asset = ledger.get_asset(asset_id)
                    sanitized = asset.status != AssetStatus.REGISTERED
                    if sanitized != (asset.evidence_ref is not None):
                        violations.append(asset)
                counts = ledger.status_counts()
                if sum(counts.values()) != 20:
                    violations.append(counts)

        readers = [threading.Thread(target=reader) for _ in range(3)]
        for t in readers:
            t.start()
        try:
            _run_all(
                ledger.record_sanitization,
                [(i, f"bafy{i}", technician) for i in range(1, 21)],
            )
        finally:
            stop.set()
            for t in readers:
                t.join()

        assert violations == []
        assert ledger.status_counts()[AssetStatus.SANITIZED] == 20
