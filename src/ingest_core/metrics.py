from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Jobs
jobs_enqueued_total = Counter(
    "ingest_jobs_enqueued_total", "Jobs admitted to a lane by priority", labelnames=("priority",)
)
jobs_rejected_total = Counter(
    "ingest_jobs_rejected_total", "Jobs rejected at admission by lane", labelnames=("lane",)
)
jobs_completed_total = Counter(
    "ingest_jobs_completed_total", "Jobs reaching a terminal status", labelnames=("status",)
)
job_duration_seconds = Histogram(
    "ingest_job_duration_seconds", "Wall time of one job run"
)

# Records
records_total = Counter(
    "ingest_records_total", "Records leaving the pipeline by disposition", labelnames=("disposition",)
)
record_latency_seconds = Histogram(
    "ingest_record_latency_seconds", "Per-record pipeline latency",
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

# Ledger
chain_appends_total = Counter(
    "ingest_chain_appends_total", "Links appended to tenant hash chains"
)

# Lanes
queue_occupancy = Gauge(
    "ingest_queue_occupancy", "PENDING jobs per lane", labelnames=("lane",)
)

# Collaborators
audit_failures_total = Counter(
    "ingest_audit_failures_total", "Audit log calls that raised"
)
