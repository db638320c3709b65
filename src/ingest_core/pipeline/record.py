from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..checksums import checksum, record_hash
from ..models import DataRecord, DataSchema, DataSource, QualityMetrics, RecordMetadata

log = logging.getLogger(__name__)

Row = Dict[str, Any]

DEFAULT_PII_PATTERNS = ("email", "name", "phone", "ssn", "credit_card", "address")
RESTRICTED_PATTERNS = ("ssn", "credit_card")
DEFAULT_RETENTION_DAYS = 2555  # seven years


class FieldEncryptor(ABC):
    """Key management lives outside the engine; this only applies a cipher."""

    @abstractmethod
    def encrypt(self, value: Any, *, key_id: str, algorithm: str) -> str:  # pragma: no cover
        ...


def identify_pii_fields(record: Row, patterns: Iterable[str] = DEFAULT_PII_PATTERNS, schema: Optional[DataSchema] = None) -> List[str]:
    pats = [p.lower() for p in patterns]
    flagged = {f.name for f in schema.fields if f.pii} if schema is not None else set()
    return [k for k in record.keys() if k in flagged or any(p in k.lower() for p in pats)]


def classify(pii_fields: Sequence[str], schema: Optional[DataSchema]) -> str:
    if schema is not None and (schema.encryption.enabled or any(f.encrypted for f in schema.fields)):
        return "RESTRICTED"
    if any(p in f.lower() for f in pii_fields for p in RESTRICTED_PATTERNS):
        return "RESTRICTED"
    if pii_fields:
        return "CONFIDENTIAL"
    return "INTERNAL"


def encrypted_fields(schema: Optional[DataSchema]) -> List[str]:
    if schema is None or not schema.encryption.enabled:
        return []
    names = list(schema.encryption.fields) + [f.name for f in schema.fields if f.encrypted]
    return list(dict.fromkeys(names))


class RecordFinalizer:
    def __init__(
        self,
        *,
        pii_patterns: Iterable[str] = DEFAULT_PII_PATTERNS,
        default_retention_days: int = DEFAULT_RETENTION_DAYS,
        encryptor: FieldEncryptor | None = None,
    ) -> None:
        self.pii_patterns = tuple(pii_patterns)
        self.default_retention_days = int(default_retention_days)
        self.encryptor = encryptor

    def _encrypt(self, data: Row, source: DataSource) -> bool:
        names = encrypted_fields(source.schema)
        if not names or self.encryptor is None:
            return False
        enc = source.schema.encryption
        touched = False
        for name in names:
            if data.get(name) is not None:
                data[name] = self.encryptor.encrypt(data[name], key_id=enc.key_id, algorithm=enc.algorithm)
                touched = True
        return touched

    def finalize(
        self,
        data: Row,
        *,
        record_id: str,
        tenant_id: str,
        source: DataSource,
        job_id: str,
        quality: QualityMetrics,
        now: datetime,
    ) -> DataRecord:
        payload = dict(data)
        pii = identify_pii_fields(payload, self.pii_patterns, source.schema)
        encrypted = self._encrypt(payload, source)
        digest = checksum(payload)
        identity_hash = record_hash(record_id, tenant_id, source.id, job_id, payload, digest)
        meta = RecordMetadata(
            version=1,
            source=source.id,
            checksum=digest,
            encrypted=encrypted,
            pii_fields=tuple(pii),
            classification=classify(pii, source.schema),  # type: ignore[arg-type]
            retention_days=int(source.metadata.get("retention_days", self.default_retention_days)),
            legal_hold=bool(source.metadata.get("legal_hold", False)),
        )
        return DataRecord(
            id=record_id,
            tenant_id=tenant_id,
            source_id=source.id,
            job_id=job_id,
            data=payload,
            metadata=meta,
            hash=identity_hash,
            timestamp=now,
            ingested_at=now,
            quality=quality,
        )
