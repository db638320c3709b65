from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..errors import QualityCheckFailed, UnsupportedDuplicateAction, ValidationFailed
from ..models import DataSource, IngestionJob, QualityIssue, QualityMetrics
from .dedup import DedupStore, DuplicateHandler, MemoryDedupStore, dedup_key
from .enrichment import Enricher
from .quality import QualityAssessor, QualityContext
from .transform import transform_record
from .validation import validate_record

log = logging.getLogger(__name__)

Row = Dict[str, Any]

SYSTEM_TENANT = "SYSTEM"


@dataclass(frozen=True)
class Outcome:
    """Disposition of one raw record after the stage chain.

    ACCEPTED records go on to finalization; every other disposition ends the
    record's journey here.
    """

    disposition: str  # ACCEPTED | INVALID | QUARANTINED | FILTERED | DUPLICATE
    tenant_id: str
    data: Optional[Row] = None
    quality: Optional[QualityMetrics] = None
    dedup_scope: Optional[str] = None
    dedup_key: Optional[str] = None
    replaces_duplicate: bool = False
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None


def resolve_tenant(record: Row, job: IngestionJob, source: DataSource) -> str:
    if job.tenant_id:
        return job.tenant_id
    value = record.get(source.schema.tenant_field)
    if value not in (None, ""):
        return str(value)
    return source.tenant_id or SYSTEM_TENANT


class RecordPipeline:
    """validate -> transform -> enrich -> deduplicate -> score quality."""

    def __init__(
        self,
        *,
        enricher: Enricher | None = None,
        dedup_store: DedupStore | None = None,
        assessor: QualityAssessor | None = None,
        duplicate_handlers: Mapping[str, DuplicateHandler] | None = None,
    ) -> None:
        self.enricher = enricher or Enricher()
        self.dedup_store = dedup_store or MemoryDedupStore()
        self.assessor = assessor or QualityAssessor()
        self.duplicate_handlers: Dict[str, DuplicateHandler] = dict(duplicate_handlers or {})

    async def process(self, raw: Row, *, job: IngestionJob, source: DataSource, now: datetime) -> Outcome:
        cfg = job.config
        record = dict(raw)
        tenant_id = resolve_tenant(record, job, source)

        # 1. validate
        result = validate_record(record, cfg.validation, source.schema)
        if not result.valid:
            policy = cfg.validation.error_handling
            if policy == "QUARANTINE":
                return Outcome("QUARANTINED", tenant_id, data=record, errors=result.errors, reason="validation")
            if policy == "FAIL" and cfg.validation.strict_mode:
                raise ValidationFailed(result.errors, job_id=job.id)
            return Outcome("INVALID", tenant_id, errors=result.errors, reason=policy.lower())

        # 2. transform
        transformed = transform_record(record, cfg.transformation)
        if transformed is None:
            return Outcome("FILTERED", tenant_id, reason="filter")

        # 3. enrich
        enriched = await self.enricher.enrich(transformed, cfg.enrichment)
        if enriched is None:
            return Outcome("FILTERED", tenant_id, reason="join")

        # 4. deduplicate
        extra: List[QualityIssue] = []
        scope = key = None
        replaces = False
        dd = cfg.deduplication
        if dd.enabled:
            scope = f"{tenant_id}:{source.id}"
            key = dedup_key(enriched, dd, source.schema)
            if await self.dedup_store.seen(scope, key):
                if dd.action == "SKIP":
                    return Outcome("DUPLICATE", tenant_id, dedup_scope=scope, dedup_key=key, reason="duplicate")
                handler = self.duplicate_handlers.get(dd.action)
                if handler is None:
                    raise UnsupportedDuplicateAction(
                        f"Deduplication action {dd.action} needs a registered handler", job_id=job.id
                    )
                resolved = await handler(enriched, key)
                if resolved is None:
                    return Outcome("DUPLICATE", tenant_id, dedup_scope=scope, dedup_key=key, reason=dd.action.lower())
                enriched = dict(resolved)
                replaces = True
                extra.append(
                    QualityIssue(type="DUPLICATE", field="*", severity="LOW", message=f"Duplicate resolved by {dd.action}")
                )

        # 5. score quality
        verdict = self.assessor.score(
            enriched,
            QualityContext(schema=source.schema, tenant_id=job.tenant_id, now=now, config=cfg.quality, extra_issues=extra),
        )
        if verdict.action == "FAIL":
            raise QualityCheckFailed(verdict.reason or "quality check failed", job_id=job.id)
        if verdict.action == "QUARANTINE":
            return Outcome(
                "QUARANTINED", tenant_id, data=enriched, quality=verdict.metrics, reason=verdict.reason
            )
        return Outcome(
            "ACCEPTED",
            tenant_id,
            data=enriched,
            quality=verdict.metrics,
            dedup_scope=scope,
            dedup_key=key,
            replaces_duplicate=replaces,
        )
