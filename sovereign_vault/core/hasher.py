"""
Canonical Hashing

Deterministic serialization and SHA-256 digests for ledger entries.
Same logical input -> same digest, regardless of how the caller built it.

If this breaks, every chain already on disk becomes unverifiable.
Changes here must be backward-compatible or bump SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order), strings only
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Datetimes: timezone-aware only, converted to UTC, microseconds, Z suffix
6. Dates: ISO 8601 (YYYY-MM-DD)
7. UUIDs: lowercase string representation
8. Enums: value, not name
9. Numbers: integral int/Decimal -> JSON integer (62 == Decimal("62.00")),
   other Decimals -> normalized decimal string ("3.5", never "3.50")
10. Floats: BANNED (coerce to Decimal at the model boundary)
11. Booleans: JSON true/false
12. JSON output: no whitespace, sorted keys, ASCII only
13. Top-level: must be a dict
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

    There is no key: the user verifies their own chain, so a plain
    SHA-256 over the canonical form is all the integrity we need.
    """

    SERIALIZATION_VERSION = 1

    DIGEST_LENGTH = 64

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert a Python value to its canonical JSON-safe form.

        Raises:
            CanonicalSerializationError: If value has no deterministic encoding
        """
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        # datetime before date: datetime is a date subclass
        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        # Enum before str/int: str-mixin enums would otherwise pass as plain values
        if isinstance(value, Enum):
            return cls._serialize_value(value.value, path)

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads due to platform-dependent "
                "serialization. Use Decimal or int."
            )

        if isinstance(value, Decimal):
            return cls._serialize_decimal(value, path)

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

        if isinstance(value, bytes):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. "
                "Convert to base64 string first."
            )

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _serialize_decimal(cls, value: Decimal, path: str) -> Any:
        """
        Normalize a Decimal.

        Integral values become plain ints so that 62, Decimal("62") and
        Decimal("62.000") share one encoding. Everything else becomes the
        shortest fixed-point string ("-0.5", "3.14159").
        """
        if not value.is_finite():
            raise CanonicalSerializationError(
                f"Cannot serialize non-finite Decimal at {path}: {value}"
            )

        if value == value.to_integral_value():
            return int(value)

        normalized = value.normalize()
        return format(normalized, "f")

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        """Sorted keys, None values dropped, values serialized recursively."""
        for key in data.keys():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be string, "
                    f"got {type(key).__name__}"
                )

        result = {}
        for key in sorted(data.keys()):
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized

        return result

    @classmethod
    def canonical_dict(cls, data: dict[str, Any] | Any) -> dict[str, Any]:
        """
        Normalize data to its canonical JSON-safe dict (no version marker).

        The result is a fixed point: canonical_dict(canonical_dict(x)) equals
        canonical_dict(x), which is what lets stored payloads be re-hashed.
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        return cls._to_canonical_dict(data)

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to the canonical JSON string, version marker included.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls.canonical_dict(data)}

        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def digest(cls, data: dict[str, Any] | Any) -> str:
        """
        SHA-256 of the canonical form.

        Returns:
            Hex-encoded digest (64 characters, lowercase)
        """
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def is_digest(cls, value: Any) -> bool:
        """True for a 64-character lowercase hex string."""
        return (
            isinstance(value, str)
            and len(value) == cls.DIGEST_LENGTH
            and all(c in "0123456789abcdef" for c in value)
        )

    @staticmethod
    def constant_time_equal(a: str | None, b: str | None) -> bool:
        """Compare two digests without leaking timing; None only equals None."""
        if a is None or b is None:
            return a is None and b is None
        return hmac.compare_digest(a.encode("ascii", "replace"), b.encode("ascii", "replace"))
