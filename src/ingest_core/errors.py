from __future__ import annotations

from typing import Optional


class IngestionError(Exception):
    """Base error of the ingestion engine; ``code`` is stable for callers."""

    code = "INGESTION_ERROR"

    def __init__(self, message: str, *, job_id: Optional[str] = None, source_id: Optional[str] = None) -> None:
        self.job_id = job_id
        self.source_id = source_id
        super().__init__(message)


class SourceNotFound(IngestionError):
    code = "SOURCE_NOT_FOUND"


class InvalidSourceConfig(IngestionError):
    code = "INVALID_SOURCE_CONFIG"


class EncryptionConfigInvalid(InvalidSourceConfig):
    code = "ENCRYPTION_CONFIG_INVALID"


class QueueFull(IngestionError):
    code = "QUEUE_FULL"

    def __init__(self, lane_id: str, *, job_id: Optional[str] = None) -> None:
        self.lane_id = lane_id
        super().__init__(f"Queue {lane_id} is full", job_id=job_id)


class JobNotFound(IngestionError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", job_id=job_id)


class InvalidStateTransition(IngestionError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, job_id: str, current: str, action: str) -> None:
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} job {job_id} in status {current}", job_id=job_id)


class ValidationFailed(IngestionError):
    code = "VALIDATION_FAILED"

    def __init__(self, errors: list[str], *, job_id: Optional[str] = None) -> None:
        self.errors = list(errors)
        super().__init__(f"Record validation failed: {', '.join(self.errors)}", job_id=job_id)


class QuarantineThresholdExceeded(IngestionError):
    code = "VALIDATION_FAILED"


class QualityCheckFailed(IngestionError):
    code = "QUALITY_FAILED"


class UnsupportedDuplicateAction(IngestionError):
    code = "DEDUP_UNSUPPORTED"


class ConnectorError(IngestionError):
    code = "CONNECTOR_ERROR"


class ExpressionError(IngestionError):
    code = "EXPRESSION_ERROR"


class RecordTimeout(IngestionError):
    code = "RECORD_TIMEOUT"
