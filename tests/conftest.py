"""Shared fixtures for the asset ledger tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from assetledger.core import (
    InMemoryEvidenceStore,
    KeyWallet,
    LedgerService,
    LocalChainTransport,
    TransportTimeout,
    UserRejected,
)
from assetledger.db import InMemoryEventStore
from assetledger.observability import get_metrics


class FakeClock:
    """Controllable, timezone-aware clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 15, 9, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedWallet(KeyWallet):
    """KeyWallet that can be told to decline or time out on its next request."""

    def __init__(self, private_key_b64: str):
        super().__init__(private_key_b64)
        self._reject_reason: Optional[str] = None
        self._timeout_pending = False

    def reject_next(self, reason: str = "User rejected the request") -> None:
        self._reject_reason = reason

    def timeout_next(self) -> None:
        self._timeout_pending = True

    def authorize(self, payload):
        if self._reject_reason is not None:
            reason, self._reject_reason = self._reject_reason, None
            raise UserRejected(reason)
        if self._timeout_pending:
            self._timeout_pending = False
            raise TransportTimeout("Wallet did not confirm the transaction in time")
        return super().authorize(payload)


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield


@pytest.fixture
def owner() -> ScriptedWallet:
    """Contract owner wallet: the only actor allowed to register."""
    return ScriptedWallet.generate()


@pytest.fixture
def technician() -> ScriptedWallet:
    return ScriptedWallet.generate()


@pytest.fixture
def recycler() -> ScriptedWallet:
    return ScriptedWallet.generate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> LocalChainTransport:
    return LocalChainTransport()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def ledger(owner, transport, event_store, clock) -> LedgerService:
    return LedgerService(
        event_store=event_store,
        transport=transport,
        contract_owner=owner.identity(),
        clock=clock,
    )


@pytest.fixture
def evidence_store() -> InMemoryEvidenceStore:
    return InMemoryEvidenceStore()


@pytest.fixture
def verifying_ledger(owner, transport, evidence_store, clock) -> LedgerService:
    """Ledger that requires evidence refs to resolve in the evidence store."""
    return LedgerService(
        transport=transport,
        contract_owner=owner.identity(),
        evidence_store=evidence_store,
        clock=clock,
    )
