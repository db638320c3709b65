# src/ingest_service/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from ingest_core import Db

class Settings(BaseSettings):
    # Scheduler
    tick_interval_sec: float = 1.0
    job_retention_hours: float = 24.0
    # Lane capacities (CRITICAL / HIGH / MEDIUM / LOW)
    critical_queue_capacity: int = 10_000
    high_queue_capacity: int = 50_000
    standard_queue_capacity: int = 100_000
    batch_queue_capacity: int = 50_000
    # Record finalization
    pii_patterns: list[str] = ["email", "name", "phone", "ssn", "credit_card", "address"]
    default_retention_days: int = 2555
    # Logging
    log_level: str = "INFO"
    # Ledger backend: memory (default) | sql
    ledger_backend: str = "memory"
    ledger_url: Optional[str] = None  # e.g. sqlite:///ledger.db; falls back to the Postgres settings
    # Dedup backend: memory (default) | redis
    dedup_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "ingest"
    # Quarantine backend: memory (default) | local | s3
    quarantine_backend: str = "memory"
    quarantine_dir: str = ".quarantine"
    s3_quarantine_bucket: Optional[str] = None
    s3_quarantine_prefix: str = "quarantine"
    s3_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None  # e.g., http://minio:9000
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    # Audit: log (default) | none
    audit_backend: str = "log"
    # Cron/interval triggers through APScheduler
    enable_apscheduler: bool = False
    # Health HTTP server (for k8s probes)
    health_http_port: Optional[int] = None  # e.g., 8080 to enable /healthz

    # Database (used by the sql ledger when ledger_url is unset)
    pg_host: Optional[str] = None
    pg_port: int = 5432
    pg_user: Optional[str] = None
    pg_password: Optional[str] = None
    pg_database: Optional[str] = None

    @property
    def db(self) -> Db:
        if not all([self.pg_host, self.pg_user, self.pg_password, self.pg_database]):
            raise ValueError("Postgres settings missing: set INGEST_PG_HOST, INGEST_PG_USER, INGEST_PG_PASSWORD, INGEST_PG_DATABASE")
        return Db(
            host=self.pg_host,  # type: ignore[arg-type]
            port=self.pg_port,
            user=self.pg_user,  # type: ignore[arg-type]
            password=self.pg_password,  # type: ignore[arg-type]
            database=self.pg_database,  # type: ignore[arg-type]
        )

    @property
    def capacities(self) -> dict[str, int]:
        return {
            "CRITICAL": self.critical_queue_capacity,
            "HIGH": self.high_queue_capacity,
            "MEDIUM": self.standard_queue_capacity,
            "LOW": self.batch_queue_capacity,
        }

    class Config:
        env_prefix = "INGEST_"
        extra = "ignore"

settings = Settings()
