from .engine import EngineSettings, IngestionEngine
from .orm.session import Db
from .audit import AuditEntry, AuditLogger, LoggingAuditLogger, MemoryAuditLogger
from .connectors import ConnectorRegistry, IterableConnector, SourceConnector
from .errors import (
    IngestionError,
    SourceNotFound,
    QueueFull,
    ValidationFailed,
    JobNotFound,
    InvalidStateTransition,
    EncryptionConfigInvalid,
    InvalidSourceConfig,
)
from .ledger import ChainVerification, HashChainLedger, MemoryChainStore, SqlChainStore, verify_chain, verify_records
from .models import (
    DataSchema,
    DataSource,
    IngestionJob,
    JobConfig,
    SchemaField,
    ScheduleConfig,
)
from .scheduling import ApschedulerTrigger, TriggerScheduler

__all__ = [
    "EngineSettings",
    "IngestionEngine",
    "Db",
    "AuditEntry",
    "AuditLogger",
    "LoggingAuditLogger",
    "MemoryAuditLogger",
    "ConnectorRegistry",
    "IterableConnector",
    "SourceConnector",
    "IngestionError",
    "SourceNotFound",
    "QueueFull",
    "ValidationFailed",
    "JobNotFound",
    "InvalidStateTransition",
    "EncryptionConfigInvalid",
    "InvalidSourceConfig",
    "ChainVerification",
    "HashChainLedger",
    "MemoryChainStore",
    "SqlChainStore",
    "verify_chain",
    "verify_records",
    "DataSchema",
    "DataSource",
    "IngestionJob",
    "JobConfig",
    "SchemaField",
    "ScheduleConfig",
    "ApschedulerTrigger",
    "TriggerScheduler",
]
