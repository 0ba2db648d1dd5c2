"""
Canonical Hashing

Deterministic serialization and SHA-256 hashing for ledger events,
transaction digests and content-addressed evidence.

CANONICAL SERIALIZATION RULES:
1. "__canon_v" version marker injected into every canonical output
2. Dictionary keys sorted recursively
3. Nulls omitted entirely
4. Empty strings, lists and dicts preserved
5. Datetimes: timezone-aware only, UTC, microseconds, Z suffix
6. UUIDs: lowercase string
7. Enums: their value
8. Floats: rejected (use Decimal or string)
9. Output: no whitespace, ASCII only
10. Top-level must be a dict
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    Same logical input produces the same hash on every platform.
    Changing the rules requires bumping SERIALIZATION_VERSION.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        # Enum check must precede int: AssetStatus is an int enum
        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads. Use Decimal or string."
            )

        if isinstance(value, Decimal):
            return str(value)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. Convert to a sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert a dict (or pydantic model) to its canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be serialized deterministically
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, got {type(data).__name__}."
            )

        canonical_dict = {
            "__canon_v": cls.SERIALIZATION_VERSION,
            **cls._to_canonical_dict(data),
        }
        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """Hex SHA-256 of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @staticmethod
    def hash_bytes(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()

    @classmethod
    def hash_event(cls, payload: dict[str, Any], previous_hash: str | None = None) -> str:
        """
        Hash an event payload with chain linkage.

        - Genesis: SHA256(canonical_payload)
        - Chained: SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_event_hash(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None,
    ) -> bool:
        try:
            computed = cls.hash_event(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
