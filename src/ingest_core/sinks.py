from __future__ import annotations

from typing import Dict, List, Optional

from .models import DataRecord


class RecordSink:
    """Destination of finalized records; called under the tenant's commit lock."""

    async def write(self, record: DataRecord) -> None:
        raise NotImplementedError


class MemoryRecordSink(RecordSink):
    def __init__(self) -> None:
        self.records: List[DataRecord] = []

    async def write(self, record: DataRecord) -> None:
        self.records.append(record)

    def for_tenant(self, tenant_id: str) -> List[DataRecord]:
        return [r for r in self.records if r.tenant_id == tenant_id]

    def for_job(self, job_id: str) -> List[DataRecord]:
        return [r for r in self.records if r.job_id == job_id]

    def by_hash(self) -> Dict[str, DataRecord]:
        return {r.hash: r for r in self.records}

    def find(self, record_id: str) -> Optional[DataRecord]:
        for r in self.records:
            if r.id == record_id:
                return r
        return None
