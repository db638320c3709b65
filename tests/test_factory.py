from __future__ import annotations

from datetime import timedelta

import pytest

from ingest_core.audit import LoggingAuditLogger, NullAuditLogger
from ingest_core.ledger import MemoryChainStore, SqlChainStore
from ingest_core.pipeline import MemoryDedupStore, RedisDedupStore
from ingest_core.quarantine import LocalQuarantineStore, MemoryQuarantine, S3QuarantineStore
from ingest_core.scheduling import ApschedulerTrigger
from ingest_service.config import Settings
from ingest_service.factory import (
    build_audit,
    build_chain_store,
    build_dedup_store,
    build_engine,
    build_quarantine,
    build_trigger,
    engine_settings,
)


def test_defaults_are_in_memory():
    s = Settings()
    assert isinstance(build_chain_store(s), MemoryChainStore)
    assert isinstance(build_dedup_store(s), MemoryDedupStore)
    assert isinstance(build_quarantine(s), MemoryQuarantine)
    assert isinstance(build_audit(s), LoggingAuditLogger)
    assert build_trigger(s) is None


def test_backends_follow_settings(tmp_path):
    s = Settings(
        ledger_backend="sql",
        ledger_url="sqlite:///:memory:",
        dedup_backend="redis",
        quarantine_backend="local",
        quarantine_dir=str(tmp_path),
        audit_backend="none",
        enable_apscheduler=True,
    )
    assert isinstance(build_chain_store(s), SqlChainStore)
    assert isinstance(build_dedup_store(s), RedisDedupStore)
    q = build_quarantine(s)
    assert isinstance(q, LocalQuarantineStore) and q.root == tmp_path
    assert isinstance(build_audit(s), NullAuditLogger)
    assert isinstance(build_trigger(s), ApschedulerTrigger)


def test_s3_quarantine_needs_bucket():
    with pytest.raises(RuntimeError):
        build_quarantine(Settings(quarantine_backend="s3"))
    store = build_quarantine(Settings(quarantine_backend="s3", s3_quarantine_bucket="b", s3_region="eu-central-1"))
    assert isinstance(store, S3QuarantineStore) and store.bucket == "b"


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        build_dedup_store(Settings(dedup_backend="memcached"))


def test_engine_settings_carry_capacities_and_retention():
    s = Settings(standard_queue_capacity=7, job_retention_hours=2, tick_interval_sec=0.5)
    es = engine_settings(s)
    assert es.capacities["MEDIUM"] == 7
    assert es.job_retention == timedelta(hours=2)
    engine = build_engine(s)
    assert engine.get_queue("standard_queue").max_size == 7
    assert engine.scheduler.tick_interval == 0.5
