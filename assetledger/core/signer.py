"""
Ed25519 Signing

Every state-changing transaction is signed by the actor's wallet key.
Actor identities are addresses derived from the public key, so a signature
can be checked against the actor it claims to come from.
"""

import base64
import hashlib
from typing import Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


class Signer:
    """Ed25519 helpers working on base64-encoded keys and signatures."""

    ADDRESS_PREFIX = "0x"

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        return base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")

    @classmethod
    def address_for(cls, public_key_b64: str) -> str:
        """
        Derive the actor address for a public key.

        Format: "0x" + last 40 hex chars of SHA-256(raw public key)

        Raises:
            ValueError: Not base64, or not a 32-byte Ed25519 key
        """
        raw = base64.b64decode(public_key_b64, validate=True)
        if len(raw) != 32:
            raise ValueError(f"Ed25519 public keys are 32 bytes, got {len(raw)}")
        return cls.ADDRESS_PREFIX + hashlib.sha256(raw).hexdigest()[-40:]

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """Sign a message, returning the base64 signature."""
        signing_key = SigningKey(base64.b64decode(private_key_b64))
        signed = signing_key.sign(message.encode("utf-8"))
        return base64.b64encode(signed.signature).decode("utf-8")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """True if signature_b64 is a valid signature of message by public_key_b64."""
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(message.encode("utf-8"), base64.b64decode(signature_b64))
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False
