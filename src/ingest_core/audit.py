from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .metrics import audit_failures_total


@dataclass(frozen=True)
class AuditEntry:
    action: str
    resource_type: str
    resource_id: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    category: str = "DATA_INGESTION"
    severity: str = "INFO"  # INFO | WARNING | ERROR
    success: bool = True
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLogger(ABC):
    """Append-only audit collaborator. Storage is the implementor's concern."""

    @abstractmethod
    async def log_operation(self, entry: AuditEntry) -> None:  # pragma: no cover
        ...


class NullAuditLogger(AuditLogger):
    async def log_operation(self, entry: AuditEntry) -> None:
        return None


class LoggingAuditLogger(AuditLogger):
    def __init__(self, logger_name: str = "ingest.audit") -> None:
        self._log = logging.getLogger(logger_name)

    async def log_operation(self, entry: AuditEntry) -> None:
        self._log.info(
            "audit action=%s %s=%s tenant=%s severity=%s success=%s%s",
            entry.action,
            entry.resource_type,
            entry.resource_id,
            entry.tenant_id,
            entry.severity,
            entry.success,
            f" error={entry.error_message}" if entry.error_message else "",
        )


class MemoryAuditLogger(AuditLogger):
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    async def log_operation(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> List[str]:
        return [e.action for e in self.entries]


async def record_audit(audit: AuditLogger, entry: AuditEntry) -> None:
    """Forward to the audit logger; a failing logger never fails the caller."""
    try:
        await audit.log_operation(entry)
    except Exception as e:
        audit_failures_total.inc()
        logging.getLogger(__name__).warning("Audit log failed for %s %s: %s", entry.action, entry.resource_id, e)
