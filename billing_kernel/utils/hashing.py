"""
Canonical JSON and payload hashing.

Audit entries store their payload in canonical form and hash it; allocation
batch keys are derived from the same hash.  Two payloads that differ only in
key order or in Decimal trailing zeros produce identical output.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _encode(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # 100, 100.0 and 100.00 must hash identically
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, Decimal/datetime/UUID/Enum encoded as strings."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def canonical_form(data: Any) -> Any:
    """
    ``data`` as it reads back from its canonical JSON.

    Stored payloads are kept in this form so the in-memory and SQL stores
    hand back identical values.
    """
    return json.loads(canonicalize_json(data))


def hash_payload(payload: Any) -> str:
    """Hex SHA-256 of the canonical JSON of ``payload``."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()
