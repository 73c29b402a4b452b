"""
Canonical JSON and SHA-256 hashing for the audit chain.

An audit entry stores its before/after snapshots as JSON and a hash over
them.  Validation recomputes that hash from the stored columns, so the
encoding must be stable: sorted keys, no whitespace, and Decimals rendered
without trailing zeros (``200`` and ``200.000000000`` read back from a
Numeric(38, 9) column must hash the same).
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# prev_hash stand-in for the first entry of the chain
GENESIS = "GENESIS"


def _encode(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return format(obj.normalize(), "f")
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Cannot encode {type(obj).__name__} in an audit snapshot")


def canonicalize_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def to_json_safe(data: Any) -> Any:
    """The snapshot as plain JSON types, exactly as a JSON column will return it."""
    return json.loads(canonicalize_json(data))


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict | None) -> str:
    return _sha256(canonicalize_json(payload or {}))


def hash_audit_entry(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Chain hash of one audit entry.

    ``sha256(entity_type|entity_id|action|payload_hash|prev_hash)``, with
    GENESIS in place of the missing predecessor.  Changing any earlier entry
    changes every hash after it.
    """
    return _sha256(
        "|".join((entity_type, str(entity_id), action, payload_hash, prev_hash or GENESIS))
    )
