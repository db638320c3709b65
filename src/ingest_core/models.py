from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional


SourceType = Literal["DATABASE", "EVENT_STREAM", "FILE", "API", "AUDIT_LOG"]
FieldType = Literal["STRING", "NUMBER", "DATE", "BOOLEAN", "JSON", "BINARY"]
RuleType = Literal["REGEX", "RANGE", "ENUM", "CUSTOM"]
Priority = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
JobType = Literal["REAL_TIME", "BATCH", "SCHEDULED"]
JobStatus = Literal["PENDING", "RUNNING", "PAUSED", "COMPLETED", "FAILED", "CANCELLED"]
ErrorHandling = Literal["FAIL", "SKIP", "QUARANTINE"]
FilterOperator = Literal["EQUALS", "NOT_EQUALS", "GREATER_THAN", "LESS_THAN", "CONTAINS"]
JoinType = Literal["INNER", "LEFT", "RIGHT", "FULL"]
DedupStrategy = Literal["PRIMARY_KEY", "HASH", "FINGERPRINT", "CUSTOM"]
DedupAction = Literal["SKIP", "UPDATE", "MERGE"]
QualityAction = Literal["WARN", "FAIL", "QUARANTINE"]
ScheduleType = Literal["INTERVAL", "CRON", "EVENT"]
Classification = Literal["PUBLIC", "INTERNAL", "CONFIDENTIAL", "RESTRICTED"]
IssueType = Literal["MISSING", "INVALID", "INCONSISTENT", "LATE", "DUPLICATE"]
Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]

PRIORITIES: tuple[Priority, ...] = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
TERMINAL_STATUSES = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


# -- sources -----------------------------------------------------------------


@dataclass(frozen=True)
class ValidationRule:
    type: RuleType
    rule: str
    error_message: str = ""


@dataclass(frozen=True)
class SchemaField:
    name: str
    type: FieldType = "STRING"
    required: bool = False
    encrypted: bool = False
    pii: bool = False
    validation: List[ValidationRule] = field(default_factory=list)


@dataclass(frozen=True)
class EncryptionConfig:
    enabled: bool = False
    algorithm: str = "AES-256-GCM"
    key_id: str = ""
    fields: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DataSchema:
    fields: List[SchemaField]
    primary_key: str = "id"
    tenant_field: str = "tenant_id"
    timestamp_field: str = "timestamp"
    indexes: List[str] = field(default_factory=list)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def get(self, name: str) -> Optional[SchemaField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass(frozen=True)
class ConnectionConfig:
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    credentials: Optional[Dict[str, str]] = None
    options: Dict[str, Any] = field(default_factory=dict)
    encryption_key: Optional[str] = None


@dataclass
class DataSource:
    id: str
    name: str
    type: SourceType
    schema: DataSchema
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    tenant_id: Optional[str] = None
    priority: Priority = "MEDIUM"
    is_active: bool = True
    last_ingested: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


# -- job configuration -------------------------------------------------------


@dataclass
class ValidationConfig:
    enabled: bool = True
    strict_mode: bool = True
    custom_rules: List[ValidationRule] = field(default_factory=list)
    error_handling: ErrorHandling = "FAIL"
    # fraction of processed records; 1.0 never escalates
    quarantine_threshold: float = 1.0


@dataclass
class FieldMapping:
    source: str
    target: str
    transform: Optional[str] = None
    default_value: Any = None


@dataclass
class CalculationRule:
    name: str
    expression: str
    dependencies: List[str] = field(default_factory=list)


@dataclass
class FilterRule:
    field: str
    operator: FilterOperator
    value: Any


@dataclass
class TransformationConfig:
    enabled: bool = False
    mappings: List[FieldMapping] = field(default_factory=list)
    calculations: List[CalculationRule] = field(default_factory=list)
    filters: List[FilterRule] = field(default_factory=list)


@dataclass
class EnrichmentSourceConfig:
    id: str
    type: Literal["DATABASE", "API", "CACHE"] = "CACHE"
    cache_ttl: float = 0.0


@dataclass
class LookupRule:
    name: str
    source_field: str
    target_field: str
    source_id: str
    lookup_key: str = ""
    default_value: Any = None


@dataclass
class JoinRule:
    name: str
    left_field: str
    right_field: str
    source_id: str
    join_type: JoinType = "LEFT"


@dataclass
class EnrichmentConfig:
    enabled: bool = False
    sources: List[EnrichmentSourceConfig] = field(default_factory=list)
    lookups: List[LookupRule] = field(default_factory=list)
    joins: List[JoinRule] = field(default_factory=list)


@dataclass
class DeduplicationConfig:
    enabled: bool = False
    strategy: DedupStrategy = "HASH"
    key_fields: List[str] = field(default_factory=list)
    # number of most recent keys remembered per (tenant, source); 0 = unbounded
    window_size: int = 0
    action: DedupAction = "SKIP"


@dataclass
class QualityRule:
    threshold: float = 0.0
    action: QualityAction = "WARN"
    rules: List[str] = field(default_factory=list)


@dataclass
class QualityConfig:
    enabled: bool = True
    max_age_seconds: float = 24 * 60 * 60
    completeness: QualityRule = field(default_factory=QualityRule)
    accuracy: QualityRule = field(default_factory=QualityRule)
    consistency: QualityRule = field(default_factory=QualityRule)
    timeliness: QualityRule = field(default_factory=QualityRule)


@dataclass
class JobConfig:
    batch_size: int = 100
    max_retries: int = 3
    retry_delay: float = 0.0
    # per-record processing timeout in seconds; 0 disables
    timeout: float = 0.0
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    transformation: TransformationConfig = field(default_factory=TransformationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)


@dataclass
class ScheduleConfig:
    type: ScheduleType
    expression: str
    timezone: str = "UTC"
    enabled: bool = True


# -- jobs --------------------------------------------------------------------


@dataclass
class JobProgress:
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    quarantined_records: int = 0
    skipped_records: int = 0
    percentage: float = 0.0
    current_batch: int = 0
    total_batches: int = 0


@dataclass
class JobMetrics:
    records_per_second: float = 0.0
    average_latency_ms: float = 0.0
    error_rate: float = 0.0
    quality_score: float = 0.0


@dataclass
class IngestionJob:
    id: str
    name: str
    source_id: str
    tenant_id: Optional[str]
    type: JobType
    priority: Priority
    config: JobConfig
    created_at: datetime
    schedule: Optional[ScheduleConfig] = None
    status: JobStatus = "PENDING"
    progress: JobProgress = field(default_factory=JobProgress)
    metrics: JobMetrics = field(default_factory=JobMetrics)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    error_count: int = 0
    last_error: Optional[str] = None
    lane: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class IngestionQueue:
    id: str
    name: str
    priority: Priority
    max_size: int
    current_size: int = 0
    dead_letter: Optional[str] = None
    is_dead_letter: bool = False


# -- records -----------------------------------------------------------------


@dataclass(frozen=True)
class QualityIssue:
    type: IssueType
    field: str
    severity: Severity
    message: str
    value: Any = None


@dataclass(frozen=True)
class QualityMetrics:
    completeness: float = 0.0
    accuracy: float = 0.0
    consistency: float = 0.0
    timeliness: float = 0.0
    overall: float = 0.0
    issues: tuple[QualityIssue, ...] = ()


@dataclass(frozen=True)
class RecordMetadata:
    version: int
    source: str
    checksum: str
    encrypted: bool
    pii_fields: tuple[str, ...]
    classification: Classification
    retention_days: int
    legal_hold: bool


@dataclass(frozen=True)
class DataRecord:
    id: str
    tenant_id: str
    source_id: str
    job_id: str
    data: Dict[str, Any]
    metadata: RecordMetadata
    hash: str
    timestamp: datetime
    ingested_at: datetime
    quality: QualityMetrics
    previous_hash: str = ""
    link_hash: str = ""


@dataclass(frozen=True)
class ChainLink:
    tenant_id: str
    index: int
    record_hash: str
    previous: str
    timestamp: datetime
    link: str
