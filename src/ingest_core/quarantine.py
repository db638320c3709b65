from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .checksums import canonical_json


@dataclass(frozen=True)
class QuarantinedRecord:
    tenant_id: str
    source_id: str
    job_id: str
    reason: str
    data: Dict[str, Any]
    errors: List[str]
    quarantined_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "source_id": self.source_id,
            "job_id": self.job_id,
            "reason": self.reason,
            "data": self.data,
            "errors": list(self.errors),
            "quarantined_at": self.quarantined_at.isoformat(),
        }


class QuarantineSink:
    async def put(self, item: QuarantinedRecord) -> str:  # returns key
        raise NotImplementedError


@dataclass
class MemoryQuarantine(QuarantineSink):
    items: Dict[str, QuarantinedRecord] = field(default_factory=dict)

    async def put(self, item: QuarantinedRecord) -> str:
        key = uuid.uuid4().hex
        self.items[key] = item
        return key

    def for_job(self, job_id: str) -> List[QuarantinedRecord]:
        return [q for q in self.items.values() if q.job_id == job_id]


@dataclass
class LocalQuarantineStore(QuarantineSink):
    root: Path

    def _ensure(self, tenant_id: str) -> Path:
        d = self.root / tenant_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _write(self, item: QuarantinedRecord) -> str:
        key = uuid.uuid4().hex
        path = self._ensure(item.tenant_id) / f"quarantine-{key}.json"
        path.write_text(canonical_json(item.to_dict()), encoding="utf-8")
        return key

    async def put(self, item: QuarantinedRecord) -> str:
        return await asyncio.to_thread(self._write, item)

    def get(self, tenant_id: str, key: str) -> Dict[str, Any]:
        path = self.root / tenant_id / f"quarantine-{key}.json"
        return json.loads(path.read_text(encoding="utf-8"))


class S3Unavailable(RuntimeError):
    pass


def _boto3():
    try:
        import boto3  # type: ignore
        return boto3
    except Exception as e:  # pragma: no cover - optional dependency
        raise S3Unavailable("boto3 is required for the S3 quarantine store. Install 'boto3'.") from e


@dataclass
class S3QuarantineStore(QuarantineSink):
    bucket: str
    prefix: str = "quarantine/"
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    client: Any = None

    def _client(self):
        if self.client is not None:
            return self.client
        boto3 = _boto3()
        kwargs = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id and self.secret_access_key:
            kwargs["aws_access_key_id"] = self.access_key_id
            kwargs["aws_secret_access_key"] = self.secret_access_key
        self.client = boto3.client("s3", **kwargs)
        return self.client

    def _key(self, tenant_id: str, key: str) -> str:
        p = self.prefix or ""
        if p and not p.endswith("/"):
            p += "/"
        return f"{p}{tenant_id}/quarantine-{key}.json"

    def _put(self, item: QuarantinedRecord) -> str:
        key = uuid.uuid4().hex
        body = canonical_json(item.to_dict()).encode("utf-8")
        self._client().put_object(
            Bucket=self.bucket, Key=self._key(item.tenant_id, key), Body=body, ContentType="application/json"
        )
        logging.getLogger(__name__).debug("Quarantined record of job %s to s3://%s", item.job_id, self.bucket)
        return key

    async def put(self, item: QuarantinedRecord) -> str:
        return await asyncio.to_thread(self._put, item)

    def get(self, tenant_id: str, key: str) -> Dict[str, Any]:
        resp = self._client().get_object(Bucket=self.bucket, Key=self._key(tenant_id, key))
        return json.loads(resp["Body"].read().decode("utf-8"))
