"""
Audit Entry Hashing

Deterministic serialization and SHA-256 chaining for audit entries.
Same entry → same hash. Always.

If this changes, every stored audit chain stops verifying.
Bump SERIALIZATION_VERSION instead of editing the rules.

CANONICAL SERIALIZATION RULES:
1. "__canon_v" is injected into every canonical output
2. Keys sorted recursively
3. None values omitted
4. Datetimes: timezone-aware only, forced to UTC, microseconds, Z suffix
5. UUIDs: lowercase; Enums: their value
6. Floats and sets: rejected
7. JSON output: no whitespace, ASCII only
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when an entry cannot be serialized deterministically."""
    pass


# Fields that make up an entry's hashed content
HASHED_FIELDS = (
    "timestamp",
    "user_id",
    "user_name",
    "action",
    "from_status",
    "to_status",
    "note",
)


class Hasher:
    """Canonical serialization and chained hashing for audit entries."""

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (bool, int, str)):
            return value
        if isinstance(value, UUID):
            return str(value).lower()
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(
                    f"Datetime at {path} is timezone-naive. "
                    "Use datetime.now(timezone.utc)."
                )
            utc = value.astimezone(timezone.utc)
            return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond:06d}Z"
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, float):
            raise CanonicalSerializationError(f"Floats are banned (at {path})")
        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
        if isinstance(value, dict):
            return cls._canonical_dict(value, path)
        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}"
        )

    @classmethod
    def _canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(f"Non-string key at {path or '<root>'}")
            serialized = cls._serialize_value(data[key], f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, content: dict[str, Any]) -> str:
        """Canonical JSON string for a dict of entry content."""
        if not isinstance(content, dict):
            raise CanonicalSerializationError(
                f"Top-level content must be a dict, got {type(content).__name__}"
            )
        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._canonical_dict(content)}
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_entry(cls, content: dict[str, Any], previous_hash: Optional[str] = None) -> str:
        """
        Hash audit entry content, chained to the previous entry.

        FORMAT:
        - First entry: SHA256(canonical)
        - Later entries: SHA256(previous_hash + ":" + canonical)
        """
        canonical = cls.canonicalize(content)
        if previous_hash is None:
            chain_input = canonical
        else:
            if len(previous_hash) != 64 or any(c not in "0123456789abcdef" for c in previous_hash.lower()):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash!r}"
                )
            chain_input = f"{previous_hash.lower()}:{canonical}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def matches(cls, content: dict[str, Any], expected_hash: str, previous_hash: Optional[str]) -> bool:
        """Whether content hashes to expected_hash under the given link."""
        try:
            computed = cls.hash_entry(content, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
