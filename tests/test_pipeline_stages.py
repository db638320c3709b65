from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from ingest_core.models import (
    CalculationRule,
    DataSchema,
    DataSource,
    DeduplicationConfig,
    EncryptionConfig,
    EnrichmentConfig,
    EnrichmentSourceConfig,
    FieldMapping,
    FilterRule,
    JoinRule,
    LookupRule,
    QualityConfig,
    QualityMetrics,
    QualityRule,
    SchemaField,
    TransformationConfig,
    ValidationConfig,
    ValidationRule,
)
from ingest_core.pipeline import (
    CachedEnrichmentSource,
    Enricher,
    MemoryDedupStore,
    QualityAssessor,
    QualityContext,
    RecordFinalizer,
    StaticEnrichmentSource,
    dedup_key,
    identify_pii_fields,
)
from ingest_core.pipeline.transform import to_date, transform_record
from ingest_core.pipeline.validation import validate_record


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

SCHEMA = DataSchema(
    fields=[
        SchemaField("id", "STRING", required=True),
        SchemaField("amount", "NUMBER", validation=[ValidationRule("RANGE", "0:1000", "amount out of range")]),
        SchemaField("country", "STRING", validation=[ValidationRule("ENUM", "DE,FR,US")]),
        SchemaField("timestamp", "DATE"),
    ]
)


# -- validation ----------------------------------------------------------------


def test_required_field_missing_is_reported_by_name():
    res = validate_record({"amount": 5}, ValidationConfig(), SCHEMA)
    assert not res.valid
    assert res.errors == ["Required field missing: id"]


def test_field_rules_and_custom_rules():
    cfg = ValidationConfig(
        custom_rules=[
            ValidationRule("REGEX", r"id:^ord-\d+$", "bad id"),
            ValidationRule("CUSTOM", "amount > 10", "too small"),
        ]
    )
    ok = validate_record({"id": "ord-1", "amount": 50, "country": "DE"}, cfg, SCHEMA)
    assert ok.valid

    bad = validate_record({"id": "x", "amount": 5000, "country": "XX"}, cfg, SCHEMA)
    assert "bad id" in bad.errors
    assert "amount out of range" in bad.errors
    assert any(e.startswith("ENUM rule failed") for e in bad.errors)


def test_disabled_validation_accepts_everything():
    assert validate_record({}, ValidationConfig(enabled=False), SCHEMA).valid


# -- transformation -------------------------------------------------------------


def test_mappings_filters_and_calculations():
    cfg = TransformationConfig(
        enabled=True,
        mappings=[
            FieldMapping("raw_amount", "amount", "TO_NUMBER"),
            FieldMapping("cc", "country", "UPPERCASE"),
            FieldMapping("channel", "channel", default_value="web"),
        ],
        filters=[FilterRule("amount", "GREATER_THAN", 0)],
        calculations=[
            CalculationRule("gross", "round(amount * 1.19, 2)", ["amount"]),
            CalculationRule("broken", "amount / zero", ["amount"]),
            CalculationRule("needs_missing", "discount * 2", ["discount"]),
        ],
    )
    out = transform_record({"raw_amount": "100", "cc": "de", "zero": 0}, cfg)
    assert out is not None
    assert out["amount"] == 100
    assert out["country"] == "DE"
    assert out["channel"] == "web"
    assert out["gross"] == 119.0
    assert out["broken"] is None
    assert out["needs_missing"] is None


def test_filter_rejection_returns_none():
    cfg = TransformationConfig(enabled=True, filters=[FilterRule("status", "NOT_EQUALS", "deleted")])
    assert transform_record({"status": "deleted"}, cfg) is None
    assert transform_record({"status": "live"}, cfg) == {"status": "live"}


def test_to_date_accepts_iso_z_and_epoch_millis():
    assert to_date("2024-05-01T12:00:00Z") == NOW
    assert to_date(int(NOW.timestamp() * 1000)) == NOW
    assert to_date("not a date") is None


def test_out_of_range_epoch_is_a_quality_issue_not_an_error():
    assert to_date(1e300) is None
    assert to_date(float("nan")) is None
    assert to_date(-1e20) is None

    record = {"id": "1", "amount": 10, "country": "DE", "timestamp": 1e300, "tenant_id": "T1"}
    m = QualityAssessor().score(record, _ctx()).metrics
    assert m.timeliness == 1.0
    assert m.consistency < 1.0
    assert m.accuracy < 1.0
    assert any(i.type == "INCONSISTENT" and i.field == "timestamp" for i in m.issues)


# -- enrichment -----------------------------------------------------------------


def test_lookup_join_and_default():
    enricher = Enricher(
        {
            "countries": StaticEnrichmentSource({"DE": {"name": "Germany"}}),
            "customers": StaticEnrichmentSource([{"cid": 7, "segment": "gold"}], key_field="cid"),
        }
    )
    cfg = EnrichmentConfig(
        enabled=True,
        lookups=[
            LookupRule("country_name", "country", "country_name", "countries", lookup_key="name"),
            LookupRule("region", "country", "region", "missing_source", default_value="EU"),
        ],
        joins=[JoinRule("customer", "customer_id", "cid", "customers")],
    )
    out = asyncio.run(enricher.enrich({"country": "DE", "customer_id": 7}, cfg))
    assert out["country_name"] == "Germany"
    assert out["region"] == "EU"
    assert out["segment"] == "gold"


def test_inner_join_without_match_drops_record():
    enricher = Enricher({"customers": StaticEnrichmentSource([{"cid": 1}], key_field="cid")})
    cfg = EnrichmentConfig(enabled=True, joins=[JoinRule("c", "customer_id", "cid", "customers", "INNER")])
    assert asyncio.run(enricher.enrich({"customer_id": 2}, cfg)) is None
    left = EnrichmentConfig(enabled=True, joins=[JoinRule("c", "customer_id", "cid", "customers", "LEFT")])
    assert asyncio.run(enricher.enrich({"customer_id": 2}, left)) == {"customer_id": 2}


def test_cached_source_hits_inner_once_within_ttl():
    calls = []

    class CountingSource(StaticEnrichmentSource):
        async def lookup(self, key, field=None):
            calls.append(key)
            return await super().lookup(key, field)

    now = [0.0]
    cached = CachedEnrichmentSource(CountingSource({"a": 1}), ttl=10, clock=lambda: now[0])

    async def scenario():
        assert await cached.lookup("a") == 1
        assert await cached.lookup("a") == 1
        now[0] = 11.0
        assert await cached.lookup("a") == 1

    asyncio.run(scenario())
    assert calls == ["a", "a"]


def test_enricher_wraps_configured_ttl_sources():
    enricher = Enricher({"s": StaticEnrichmentSource({"k": "v"})})
    cfg = EnrichmentConfig(
        enabled=True,
        sources=[EnrichmentSourceConfig("s", "CACHE", cache_ttl=60)],
        lookups=[LookupRule("x", "key", "value", "s")],
    )
    out = asyncio.run(enricher.enrich({"key": "k"}, cfg))
    assert out["value"] == "v"
    assert isinstance(enricher._source("s", cfg), CachedEnrichmentSource)


# -- deduplication --------------------------------------------------------------


def test_dedup_key_strategies():
    pk = DeduplicationConfig(enabled=True, strategy="PRIMARY_KEY")
    assert dedup_key({"id": 1, "x": 1}, pk, SCHEMA) == dedup_key({"id": 1, "x": 2}, pk, SCHEMA)

    fp = DeduplicationConfig(enabled=True, strategy="FINGERPRINT")
    assert dedup_key({"Name": " Ada  Lovelace"}, fp) == dedup_key({"name": "ada lovelace"}, fp)

    h = DeduplicationConfig(enabled=True, strategy="HASH")
    assert dedup_key({"a": 1, "b": 2}, h) == dedup_key({"b": 2, "a": 1}, h)
    assert dedup_key({"a": 1}, h) != dedup_key({"a": 2}, h)

    custom = DeduplicationConfig(enabled=True, strategy="CUSTOM", key_fields=["email"])
    assert dedup_key({"email": "a@x", "n": 1}, custom) == dedup_key({"email": "a@x", "n": 2}, custom)


def test_memory_dedup_store_window_evicts_oldest():
    store = MemoryDedupStore()

    async def scenario():
        assert await store.mark("T:s", "a", window=2)
        assert await store.mark("T:s", "b", window=2)
        assert not await store.mark("T:s", "a", window=2)
        assert await store.mark("T:s", "c", window=2)
        assert not await store.seen("T:s", "b")
        assert await store.seen("T:s", "a")
        assert not await store.seen("other:s", "a")

    asyncio.run(scenario())


# -- quality --------------------------------------------------------------------


def _ctx(**kw) -> QualityContext:
    return QualityContext(schema=SCHEMA, tenant_id="T1", now=NOW, config=kw.pop("config", QualityConfig()), **kw)


def test_quality_scores_are_deterministic_and_bounded():
    record = {"id": "1", "amount": 10, "country": "DE", "timestamp": NOW.isoformat(), "tenant_id": "T1"}
    v1 = QualityAssessor().score(record, _ctx())
    v2 = QualityAssessor().score(record, _ctx())
    assert v1 == v2
    m = v1.metrics
    assert m.completeness == 1.0
    assert m.accuracy == 1.0
    assert m.consistency == 1.0
    assert m.timeliness == 1.0
    assert m.overall == 1.0
    assert v1.action == "ACCEPT"


def test_quality_issues_and_threshold_actions():
    old = (NOW - timedelta(days=2)).isoformat()
    record = {"id": "1", "amount": "abc", "country": None, "timestamp": old, "tenant_id": "T2"}
    verdict = QualityAssessor().score(record, _ctx())
    m = verdict.metrics
    assert m.completeness == 0.8
    assert m.accuracy == round(2 / 3, 4)
    assert m.timeliness == 0.0
    kinds = {i.type for i in m.issues}
    assert {"MISSING", "INVALID", "INCONSISTENT", "LATE"} <= kinds
    for v in (m.completeness, m.accuracy, m.consistency, m.timeliness, m.overall):
        assert 0.0 <= v <= 1.0

    quarantine = QualityConfig(accuracy=QualityRule(threshold=0.9, action="QUARANTINE"))
    assert QualityAssessor().score(record, _ctx(config=quarantine)).action == "QUARANTINE"

    fail = QualityConfig(completeness=QualityRule(threshold=0.9, action="FAIL"))
    verdict = QualityAssessor().score(record, _ctx(config=fail))
    assert verdict.action == "FAIL"
    assert verdict.reason.startswith("completeness")


def test_injected_scorer_replaces_default():
    assessor = QualityAssessor(accuracy_scorer=lambda record, ctx: (0.25, []))
    verdict = assessor.score({"id": "1"}, _ctx())
    assert verdict.metrics.accuracy == 0.25


# -- finalization ---------------------------------------------------------------


class ReverseEncryptor:
    def encrypt(self, value, *, key_id, algorithm):
        return f"{key_id}:{str(value)[::-1]}"


def test_pii_detection_and_classification():
    assert identify_pii_fields({"email": "a@x", "full_name": "A", "amount": 1}) == ["email", "full_name"]

    source = DataSource(id="s1", name="s1", type="FILE", schema=SCHEMA)
    rec = RecordFinalizer().finalize(
        {"id": "1", "email": "a@x"}, record_id="r1", tenant_id="T1", source=source, job_id="j1",
        quality=QualityMetrics(), now=NOW,
    )
    assert rec.metadata.pii_fields == ("email",)
    assert rec.metadata.classification == "CONFIDENTIAL"
    assert rec.metadata.retention_days == 2555
    assert rec.metadata.encrypted is False

    plain = RecordFinalizer().finalize(
        {"id": "1"}, record_id="r1", tenant_id="T1", source=source, job_id="j1", quality=QualityMetrics(), now=NOW
    )
    assert plain.metadata.classification == "INTERNAL"
    ssn = RecordFinalizer().finalize(
        {"ssn": "123"}, record_id="r1", tenant_id="T1", source=source, job_id="j1", quality=QualityMetrics(), now=NOW
    )
    assert ssn.metadata.classification == "RESTRICTED"


def test_encryption_applies_to_configured_fields_only():
    schema = DataSchema(
        fields=[SchemaField("id"), SchemaField("card", encrypted=True)],
        encryption=EncryptionConfig(enabled=True, key_id="k1"),
    )
    source = DataSource(id="s1", name="s1", type="FILE", schema=schema, metadata={"retention_days": 30, "legal_hold": True})
    rec = RecordFinalizer(encryptor=ReverseEncryptor()).finalize(
        {"id": "1", "card": "4242"}, record_id="r1", tenant_id="T1", source=source, job_id="j1",
        quality=QualityMetrics(), now=NOW,
    )
    assert rec.data == {"id": "1", "card": "k1:2424"}
    assert rec.metadata.encrypted is True
    assert rec.metadata.classification == "RESTRICTED"
    assert rec.metadata.retention_days == 30
    assert rec.metadata.legal_hold is True


def test_record_hash_depends_on_identity_and_payload():
    source = DataSource(id="s1", name="s1", type="FILE", schema=SCHEMA)
    fin = RecordFinalizer()
    kw = dict(tenant_id="T1", source=source, job_id="j1", quality=QualityMetrics(), now=NOW)
    a = fin.finalize({"id": "1"}, record_id="r1", **kw)
    b = fin.finalize({"id": "1"}, record_id="r1", **kw)
    c = fin.finalize({"id": "2"}, record_id="r1", **kw)
    assert a.hash == b.hash
    assert a.hash != c.hash
    assert len(a.hash) == 64
