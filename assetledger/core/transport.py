"""
Ledger Transports

The channel that carries a signed transition to durable (on-chain) storage.
Delivery is at-least-once; a successful submit returns a transaction id.

Implementations:
- LocalChainTransport: in-process chain for development and tests
- JsonRpcTransport: JSON-RPC 2.0 over HTTP (httpx) to a ledger node

Failure mapping:
- NetworkError: could not reach the node (retryable)
- TransportTimeout: no answer in time (retryable)
- Reverted(reason): the node rejected the transition (permanent)
"""

import hashlib
import itertools
import time
from abc import ABC, abstractmethod
from collections import deque
from threading import Lock
from typing import Optional

import httpx

from ..observability import get_logger
from ..schemas import Transition
from .errors import LedgerError, NetworkError, Reverted, TransportTimeout

logger = get_logger(__name__)


class LedgerTransport(ABC):
    """Interface consumed by the ledger to commit transitions remotely."""

    @abstractmethod
    def submit(self, transition: Transition) -> str:
        """
        Submit a transition and wait for confirmation.

        Returns:
            Transaction id assigned by the backend
        """


class LocalChainTransport(LedgerTransport):
    """
    In-process chain.

    - Assigns "0x"-prefixed transaction ids and block numbers
    - Re-delivery of an idempotency key returns the original transaction id
    - fail_next() scripts transport failures for the next submits
    - delay_seconds simulates confirmation latency
    """

    def __init__(self, delay_seconds: float = 0.0):
        self._delay_seconds = delay_seconds
        self._lock = Lock()
        self._blocks = itertools.count(1)
        self._by_key: dict[str, str] = {}
        self._transactions: list[tuple[str, Transition]] = []
        self._scripted: deque[LedgerError] = deque()

    def fail_next(self, error: LedgerError, times: int = 1) -> None:
        with self._lock:
            for _ in range(times):
                self._scripted.append(error)

    @property
    def transactions(self) -> list[tuple[str, Transition]]:
        with self._lock:
            return list(self._transactions)

    @property
    def submit_count(self) -> int:
        return len(self.transactions)

    def submit(self, transition: Transition) -> str:
        if self._delay_seconds:
            time.sleep(self._delay_seconds)

        with self._lock:
            if self._scripted:
                raise self._scripted.popleft()

            existing = self._by_key.get(transition.idempotency_key)
            if existing is not None:
                logger.debug(
                    "Duplicate delivery absorbed by chain",
                    transaction_id=existing,
                    idempotency_key=transition.idempotency_key,
                )
                return existing

            block = next(self._blocks)
            tx_id = "0x" + hashlib.sha256(
                f"{block}:{transition.idempotency_key}".encode("utf-8")
            ).hexdigest()
            self._by_key[transition.idempotency_key] = tx_id
            self._transactions.append((tx_id, transition))

        return tx_id


class JsonRpcTransport(LedgerTransport):
    """
    Submits transitions as JSON-RPC 2.0 calls.

    Request:  {"jsonrpc": "2.0", "id": n, "method": "ledger_submitTransition",
               "params": [<transition>]}
    Response: {"result": "<transaction id>"} or {"error": {"code", "message"}}
    """

    METHOD = "ledger_submitTransition"
    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        rpc_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self._rpc_url = rpc_url
        self._client = client or httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._client.close()

    def submit(self, transition: Transition) -> str:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": self.METHOD,
            "params": [transition.model_dump(mode="json")],
        }

        try:
            response = self._client.post(self._rpc_url, json=body)
        except httpx.TimeoutException as e:
            raise TransportTimeout(
                f"Ledger node did not confirm transaction in time ({self._rpc_url})"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Ledger node unreachable: {e}") from e

        if response.status_code >= 500:
            raise NetworkError(f"Ledger node error: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(
                f"Ledger node returned a non-JSON response (HTTP {response.status_code})"
            ) from e

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise Reverted(message or "Transaction reverted")

        result = data.get("result")
        if isinstance(result, dict):
            result = result.get("transactionId") or result.get("hash")
        if not result:
            raise NetworkError("Ledger node response has no transaction id")

        return str(result)
