from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from ingest_core import EngineSettings, IngestionEngine, LoggingAuditLogger
from ingest_core.audit import AuditLogger, NullAuditLogger
from ingest_core.ledger import ChainStore, HashChainLedger, MemoryChainStore, SqlChainStore
from ingest_core.orm.session import make_dsn
from ingest_core.pipeline import DedupStore, MemoryDedupStore, RedisDedupStore
from ingest_core.quarantine import LocalQuarantineStore, MemoryQuarantine, QuarantineSink, S3QuarantineStore
from ingest_core.scheduling import ApschedulerTrigger, TriggerScheduler

from .config import Settings


def engine_settings(s: Settings) -> EngineSettings:
    return EngineSettings(
        tick_interval=s.tick_interval_sec,
        job_retention=timedelta(hours=s.job_retention_hours),
        capacities=s.capacities,
        pii_patterns=tuple(s.pii_patterns),
        default_retention_days=s.default_retention_days,
    )


def build_chain_store(s: Settings) -> ChainStore:
    backend = (s.ledger_backend or "memory").lower()
    if backend == "sql":
        return SqlChainStore(s.ledger_url or make_dsn(s.db))
    if backend == "memory":
        return MemoryChainStore()
    raise ValueError(f"Unknown ledger backend: {backend}")


def build_dedup_store(s: Settings) -> DedupStore:
    backend = (s.dedup_backend or "memory").lower()
    if backend == "redis":
        return RedisDedupStore(url=s.redis_url, namespace=s.redis_namespace)
    if backend == "memory":
        return MemoryDedupStore()
    raise ValueError(f"Unknown dedup backend: {backend}")


def build_quarantine(s: Settings) -> QuarantineSink:
    backend = (s.quarantine_backend or "memory").lower()
    if backend == "s3":
        if not s.s3_quarantine_bucket:
            raise RuntimeError("S3 quarantine selected but INGEST_S3_QUARANTINE_BUCKET not set")
        return S3QuarantineStore(
            bucket=s.s3_quarantine_bucket,
            prefix=s.s3_quarantine_prefix,
            region=s.s3_region,
            endpoint_url=s.s3_endpoint_url,
            access_key_id=s.s3_access_key_id,
            secret_access_key=s.s3_secret_access_key,
        )
    if backend == "local":
        return LocalQuarantineStore(root=Path(s.quarantine_dir))
    if backend == "memory":
        return MemoryQuarantine()
    raise ValueError(f"Unknown quarantine backend: {backend}")


def build_audit(s: Settings) -> AuditLogger:
    return NullAuditLogger() if (s.audit_backend or "log").lower() == "none" else LoggingAuditLogger()


def build_trigger(s: Settings) -> TriggerScheduler | None:
    return ApschedulerTrigger() if s.enable_apscheduler else None


def build_engine(s: Settings) -> IngestionEngine:
    log = logging.getLogger(__name__)
    engine = IngestionEngine(
        engine_settings(s),
        audit=build_audit(s),
        ledger=HashChainLedger(build_chain_store(s)),
        dedup_store=build_dedup_store(s),
        quarantine=build_quarantine(s),
        trigger=build_trigger(s),
    )
    log.info(
        "Engine built: ledger=%s dedup=%s quarantine=%s triggers=%s",
        s.ledger_backend,
        s.dedup_backend,
        s.quarantine_backend,
        "apscheduler" if s.enable_apscheduler else "none",
    )
    return engine
