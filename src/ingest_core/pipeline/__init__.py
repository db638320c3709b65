from .dedup import DedupStore, MemoryDedupStore, RedisDedupStore, dedup_key
from .enrichment import CachedEnrichmentSource, Enricher, EnrichmentSource, SqlEnrichmentSource, StaticEnrichmentSource
from .quality import QualityAssessor, QualityContext
from .record import FieldEncryptor, RecordFinalizer, identify_pii_fields
from .runner import Outcome, RecordPipeline

__all__ = [
    "DedupStore",
    "MemoryDedupStore",
    "RedisDedupStore",
    "dedup_key",
    "CachedEnrichmentSource",
    "Enricher",
    "EnrichmentSource",
    "SqlEnrichmentSource",
    "StaticEnrichmentSource",
    "QualityAssessor",
    "QualityContext",
    "FieldEncryptor",
    "RecordFinalizer",
    "identify_pii_fields",
    "Outcome",
    "RecordPipeline",
]
