"""
Canonical Hashing

Deterministic serialization and SHA-256 hashing for claims and attestations.
Same claim → same bytes → same hash. On every host, after every restart.

An attestation is only as strong as this module: if two processes disagree
about the canonical bytes of a claim, a valid attestation will be rejected
(or worse, a tampered one accepted). Every change here must be versioned.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively, must be strings
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Enums: string value (not name)
7. Integers: arbitrary precision, emitted as JSON integers (micro-units, u128 ids)
8. Floats: BANNED - amounts are integer micro-units, use Decimal or str elsewhere
9. Decimal: string representation
10. Top-level: must be a dict/object

DERIVED IDENTIFIERS:
Idempotency ids are never random. derive_id() maps (namespace, value) onto
a 128-bit integer in [1, 2^128 - 2], the range accepted by the ledger.
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# Ledger ids are u128; 0 and 2^128-1 are reserved by the ledger protocol.
U128_MAX = (1 << 128) - 1


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization, hashing and id derivation.

    IMMUTABLE CONTRACT:
    - Same logical input → same hash
    - Same claim id → same transfer id
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert a Python value to its canonical JSON-compatible form.

        Raises:
            CanonicalSerializationError: If value has no deterministic form
        """
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        # bool is a subclass of int, keep it before the int check
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Amounts are integer micro-units; use int, Decimal or str."
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

        if isinstance(value, (bytes, set)):
            raise CanonicalSerializationError(
                f"Cannot serialize {type(value).__name__} at {path}. "
                "Encode bytes as hex/base64 and sets as sorted lists."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Serialize a timezone-aware datetime as YYYY-MM-DDTHH:MM:SS.ffffffZ."""
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
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to its canonical JSON string.

        Args:
            data: Dict or pydantic model

        Returns:
            Canonical JSON string carrying the "__canon_v" marker

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
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
        """
        Hash data using SHA-256 over its canonical form.

        Returns:
            Hex-encoded SHA-256 hash (64 lowercase characters)
        """
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def hash_text(text: str) -> str:
        """SHA-256 of a plain UTF-8 string, hex-encoded."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def derive_id(namespace: str, value: str) -> int:
        """
        Derive a deterministic 128-bit identifier.

        The result is stable across processes and restarts, and never
        0 or 2^128-1 (both reserved by the ledger).

        Args:
            namespace: Domain separator, e.g. "transfer"
            value: Source identity, e.g. a claim id

        Returns:
            Integer in [1, 2^128 - 2]
        """
        digest = hashlib.sha256(f"{namespace}:{value}".encode("utf-8")).digest()
        raw = int.from_bytes(digest[:16], "big")
        return raw % (U128_MAX - 1) + 1

    @staticmethod
    def constant_time_compare(a: str, b: str) -> bool:
        """Compare two strings without leaking where they differ."""
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def derive_transfer_id(claim_id: str) -> int:
    """
    Idempotency id of the ledger transfer that clears a claim.

    Re-submitting the same claim always maps to the same transfer id, so the
    ledger (not this process) decides whether it was already posted.
    """
    return Hasher.derive_id("transfer", claim_id)
