from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ingest_core.models import (
    CalculationRule,
    ConnectionConfig,
    DataSchema,
    DataSource,
    DeduplicationConfig,
    EncryptionConfig,
    EnrichmentConfig,
    EnrichmentSourceConfig,
    FieldMapping,
    FilterRule,
    JobConfig,
    JoinRule,
    LookupRule,
    QualityConfig,
    QualityRule,
    ScheduleConfig,
    SchemaField,
    TransformationConfig,
    ValidationConfig,
    ValidationRule,
)
from ingest_core.pipeline import EnrichmentSource, StaticEnrichmentSource


@dataclass
class JobSpec:
    source_id: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    type: str = "BATCH"
    priority: Optional[str] = None
    config: JobConfig = field(default_factory=JobConfig)
    schedule: Optional[ScheduleConfig] = None


@dataclass
class IngestConfig:
    sources: List[DataSource]
    jobs: List[JobSpec]
    enrichment_sources: Dict[str, EnrichmentSource] = field(default_factory=dict)


def _rules(items: Optional[List[Dict[str, Any]]]) -> List[ValidationRule]:
    return [
        ValidationRule(type=str(r["type"]).upper(), rule=str(r["rule"]), error_message=r.get("error_message", ""))  # type: ignore[arg-type]
        for r in (items or [])
    ]


def schema_from_dict(data: Dict[str, Any]) -> DataSchema:
    fields = [
        SchemaField(
            name=f["name"],
            type=str(f.get("type", "STRING")).upper(),  # type: ignore[arg-type]
            required=bool(f.get("required", False)),
            encrypted=bool(f.get("encrypted", False)),
            pii=bool(f.get("pii", False)),
            validation=_rules(f.get("validation")),
        )
        for f in data.get("fields", [])
    ]
    enc = data.get("encryption") or {}
    return DataSchema(
        fields=fields,
        primary_key=data.get("primary_key", "id"),
        tenant_field=data.get("tenant_field", "tenant_id"),
        timestamp_field=data.get("timestamp_field", "timestamp"),
        indexes=list(data.get("indexes") or []),
        encryption=EncryptionConfig(
            enabled=bool(enc.get("enabled", False)),
            algorithm=enc.get("algorithm", "AES-256-GCM"),
            key_id=enc.get("key_id", ""),
            fields=list(enc.get("fields") or []),
        ),
    )


def source_from_dict(item: Dict[str, Any]) -> DataSource:
    conn = item.get("connection") or {}
    return DataSource(
        id=item["id"],
        name=item.get("name", item["id"]),
        type=str(item.get("type", "")).upper(),  # type: ignore[arg-type]
        schema=schema_from_dict(item.get("schema") or {}),
        connection=ConnectionConfig(
            host=conn.get("host"),
            port=conn.get("port"),
            database=conn.get("database"),
            credentials=conn.get("credentials"),
            options=dict(conn.get("options") or {}),
            encryption_key=conn.get("encryption_key"),
        ),
        tenant_id=item.get("tenant_id"),
        priority=str(item.get("priority", "MEDIUM")).upper(),  # type: ignore[arg-type]
        is_active=bool(item.get("is_active", True)),
        metadata=dict(item.get("metadata") or {}),
    )


def _quality_rule(data: Optional[Dict[str, Any]]) -> QualityRule:
    data = data or {}
    return QualityRule(
        threshold=float(data.get("threshold", 0.0)),
        action=str(data.get("action", "WARN")).upper(),  # type: ignore[arg-type]
        rules=list(data.get("rules") or []),
    )


def job_config_from_dict(data: Optional[Dict[str, Any]]) -> JobConfig:
    data = data or {}
    v = data.get("validation") or {}
    t = data.get("transformation") or {}
    e = data.get("enrichment") or {}
    d = data.get("deduplication") or {}
    q = data.get("quality") or {}
    return JobConfig(
        batch_size=int(data.get("batch_size", 100)),
        max_retries=int(data.get("max_retries", 3)),
        retry_delay=float(data.get("retry_delay", 0.0)),
        timeout=float(data.get("timeout", 0.0)),
        validation=ValidationConfig(
            enabled=bool(v.get("enabled", True)),
            strict_mode=bool(v.get("strict_mode", True)),
            custom_rules=_rules(v.get("custom_rules")),
            error_handling=str(v.get("error_handling", "FAIL")).upper(),  # type: ignore[arg-type]
            quarantine_threshold=float(v.get("quarantine_threshold", 1.0)),
        ),
        transformation=TransformationConfig(
            enabled=bool(t.get("enabled", bool(t))),
            mappings=[
                FieldMapping(source=m["source"], target=m["target"], transform=m.get("transform"), default_value=m.get("default_value"))
                for m in t.get("mappings", [])
            ],
            calculations=[
                CalculationRule(name=c["name"], expression=c["expression"], dependencies=list(c.get("dependencies") or []))
                for c in t.get("calculations", [])
            ],
            filters=[
                FilterRule(field=f["field"], operator=str(f["operator"]).upper(), value=f.get("value"))  # type: ignore[arg-type]
                for f in t.get("filters", [])
            ],
        ),
        enrichment=EnrichmentConfig(
            enabled=bool(e.get("enabled", bool(e))),
            sources=[
                EnrichmentSourceConfig(id=s["id"], type=str(s.get("type", "CACHE")).upper(), cache_ttl=float(s.get("cache_ttl", 0)))  # type: ignore[arg-type]
                for s in e.get("sources", [])
            ],
            lookups=[
                LookupRule(
                    name=lk.get("name", lk["target_field"]),
                    source_field=lk["source_field"],
                    target_field=lk["target_field"],
                    source_id=lk["source_id"],
                    lookup_key=lk.get("lookup_key", ""),
                    default_value=lk.get("default_value"),
                )
                for lk in e.get("lookups", [])
            ],
            joins=[
                JoinRule(
                    name=j.get("name", j["source_id"]),
                    left_field=j["left_field"],
                    right_field=j["right_field"],
                    source_id=j["source_id"],
                    join_type=str(j.get("join_type", "LEFT")).upper(),  # type: ignore[arg-type]
                )
                for j in e.get("joins", [])
            ],
        ),
        deduplication=DeduplicationConfig(
            enabled=bool(d.get("enabled", bool(d))),
            strategy=str(d.get("strategy", "HASH")).upper(),  # type: ignore[arg-type]
            key_fields=list(d.get("key_fields") or []),
            window_size=int(d.get("window_size", 0)),
            action=str(d.get("action", "SKIP")).upper(),  # type: ignore[arg-type]
        ),
        quality=QualityConfig(
            enabled=bool(q.get("enabled", True)),
            max_age_seconds=float(q.get("max_age_seconds", 24 * 60 * 60)),
            completeness=_quality_rule(q.get("completeness")),
            accuracy=_quality_rule(q.get("accuracy")),
            consistency=_quality_rule(q.get("consistency")),
            timeliness=_quality_rule(q.get("timeliness")),
        ),
    )


def schedule_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ScheduleConfig]:
    if not data:
        return None
    return ScheduleConfig(
        type=str(data["type"]).upper(),  # type: ignore[arg-type]
        expression=str(data["expression"]),
        timezone=data.get("timezone", "UTC"),
        enabled=bool(data.get("enabled", True)),
    )


def config_from_dict(data: dict) -> IngestConfig:
    srcs = [source_from_dict(item) for item in data.get("sources", [])]
    jobs: List[JobSpec] = []
    for item in data.get("jobs", []):
        jobs.append(
            JobSpec(
                source_id=item["source"],
                name=item.get("name"),
                tenant_id=item.get("tenant_id"),
                type=str(item.get("type", "BATCH")).upper(),
                priority=str(item["priority"]).upper() if item.get("priority") else None,
                config=job_config_from_dict(item.get("config")),
                schedule=schedule_from_dict(item.get("schedule")),
            )
        )
    side: Dict[str, EnrichmentSource] = {}
    for item in data.get("enrichment_sources", []):
        t = (item.get("type") or "static").lower()
        if t == "static":
            side[item["id"]] = StaticEnrichmentSource(item.get("rows") or item.get("values") or {}, key_field=item.get("key_field", "id"))
        else:
            raise ValueError(f"Unknown enrichment source type: {t}")
    return IngestConfig(sources=srcs, jobs=jobs, enrichment_sources=side)


def load_config(path: Path) -> IngestConfig:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return config_from_dict(data)
