"""
Canonical JSON and SHA-256 hashing.

Used for idempotency fingerprints (a key is bound to the exact request it
first carried) and for the ledger's canonical hash.  Two payloads that mean
the same thing must serialize to the same bytes: keys are sorted, Decimals
are normalized (``5``, ``5.0`` and ``5.000`` are equal), and enums, UUIDs
and datetimes are rendered as strings.
"""

import hashlib
import json
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _to_json(obj: Any) -> Any:
    match obj:
        case Decimal():
            return str(obj.normalize())
        case Enum():
            return obj.value
        case UUID():
            return str(obj)
        case date():
            return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Compact, key-sorted JSON with ledger value types rendered stably."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_to_json)


def hash_payload(payload: dict) -> str:
    """Hex SHA-256 (64 characters) of ``canonicalize_json(payload)``."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()
