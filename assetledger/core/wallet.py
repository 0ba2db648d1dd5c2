"""
Wallet Signers

A WalletSigner supplies the requesting actor's identity and authorizes
state-changing transactions by signing their digest.

Implementations:
- KeyWallet: holds an Ed25519 key in-process (CLI, tests, service owner key)
- PresignedWallet: wraps a signature produced client-side (HTTP requests)

Authorization can be slow (user confirmation). Callers must not hold ledger
locks on in-memory state while waiting for it.
"""

from abc import ABC, abstractmethod

from ..schemas import TransactionAuthorization, TransactionPayload
from .errors import InvalidInput
from .signer import Signer


class WalletSigner(ABC):
    """Interface consumed by the ledger for every state-changing call."""

    @abstractmethod
    def identity(self) -> str:
        """The actor address this wallet acts as."""

    @abstractmethod
    def authorize(self, payload: TransactionPayload) -> TransactionAuthorization:
        """
        Sign the payload digest.

        Raises:
            UserRejected: The holder declined
            TransportTimeout: No answer in time
        """


class KeyWallet(WalletSigner):
    """Wallet backed by a local Ed25519 private key."""

    def __init__(self, private_key_b64: str):
        self._private_key = private_key_b64
        self._public_key = Signer.public_key_for(private_key_b64)
        self._address = Signer.address_for(self._public_key)

    @classmethod
    def generate(cls) -> "KeyWallet":
        private_key, _ = Signer.generate_keypair()
        return cls(private_key)

    @property
    def public_key(self) -> str:
        return self._public_key

    def identity(self) -> str:
        return self._address

    def authorize(self, payload: TransactionPayload) -> TransactionAuthorization:
        digest = payload.digest()
        return TransactionAuthorization(
            actor=self._address,
            public_key=self._public_key,
            digest=digest,
            signature=Signer.sign(digest, self._private_key),
        )


class PresignedWallet(WalletSigner):
    """
    Wallet for requests signed by the client before they reach the service.

    The client fetches the digest for its intended action, signs it with its
    own key and sends (public_key, signature). The ledger verifies the
    signature against the digest it computes itself, so a signature over any
    other payload is rejected as Unauthorized.
    """

    def __init__(self, public_key_b64: str, signature_b64: str):
        if not public_key_b64 or not signature_b64:
            raise InvalidInput("public_key and signature are required")
        try:
            self._address = Signer.address_for(public_key_b64)
        except ValueError as e:
            raise InvalidInput(f"public_key is not valid base64: {e}") from e
        self._public_key = public_key_b64
        self._signature = signature_b64

    def identity(self) -> str:
        return self._address

    def authorize(self, payload: TransactionPayload) -> TransactionAuthorization:
        return TransactionAuthorization(
            actor=self._address,
            public_key=self._public_key,
            digest=payload.digest(),
            signature=self._signature,
        )


class SignatureBundleWallet(WalletSigner):
    """
    Presigned wallet for several transactions at once (bulk requests).

    signatures maps each transaction digest to the client's signature over it.
    A payload without a matching signature is authorized with an empty
    signature, which the ledger rejects as Unauthorized.
    """

    def __init__(self, public_key_b64: str, signatures: dict[str, str]):
        if not public_key_b64:
            raise InvalidInput("public_key is required")
        try:
            self._address = Signer.address_for(public_key_b64)
        except ValueError as e:
            raise InvalidInput(f"public_key is not valid base64: {e}") from e
        self._public_key = public_key_b64
        self._signatures = dict(signatures)

    def identity(self) -> str:
        return self._address

    def authorize(self, payload: TransactionPayload) -> TransactionAuthorization:
        digest = payload.digest()
        return TransactionAuthorization(
            actor=self._address,
            public_key=self._public_key,
            digest=digest,
            signature=self._signatures.get(digest, ""),
        )
