from __future__ import annotations

import base64
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(data: Any) -> str:
    """Stable JSON encoding: sorted keys, no whitespace, ISO datetimes."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_default)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def checksum(data: Any) -> str:
    return sha256_hex(canonical_json(data))


def link_hash(record_hash: str, previous: str, timestamp: datetime) -> str:
    return checksum({"recordHash": record_hash, "previousHash": previous, "timestamp": timestamp.isoformat()})


def record_hash(record_id: str, tenant_id: str, source_id: str, job_id: str, data: Any, digest: str) -> str:
    """Hash binding a record's identity to its payload checksum."""
    return checksum(
        {
            "id": record_id,
            "tenant_id": tenant_id,
            "source_id": source_id,
            "job_id": job_id,
            "data": data,
            "checksum": digest,
        }
    )
