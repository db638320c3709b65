from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from .connectors import ConnectorRegistry
from .errors import EncryptionConfigInvalid, InvalidSourceConfig, SourceNotFound
from .models import DataSource

SOURCE_TYPES = ("DATABASE", "EVENT_STREAM", "FILE", "API", "AUDIT_LOG")


def validate_source(source: DataSource) -> None:
    missing = [k for k in ("id", "name", "type") if not getattr(source, k, None)]
    if missing:
        raise InvalidSourceConfig(f"Source is missing {', '.join(missing)}", source_id=source.id or None)
    if source.type not in SOURCE_TYPES:
        raise InvalidSourceConfig(f"Unknown source type: {source.type}", source_id=source.id)
    if source.schema is None or not source.schema.fields:
        raise InvalidSourceConfig("Source schema has no fields", source_id=source.id)
    names = source.schema.field_names()
    if len(set(names)) != len(names):
        raise InvalidSourceConfig("Source schema has duplicate field names", source_id=source.id)
    enc = source.schema.encryption
    if enc.enabled and not enc.key_id:
        raise EncryptionConfigInvalid("Encryption is enabled but no key id is configured", source_id=source.id)


class SourceRegistry:
    """Validated source configurations handed to jobs at start."""

    def __init__(self, connectors: ConnectorRegistry | None = None) -> None:
        self.connectors = connectors or ConnectorRegistry.default()
        self._sources: Dict[str, DataSource] = {}
        self._lock = threading.Lock()
        self._log = logging.getLogger(__name__)

    def register(self, source: DataSource, *, test_connection: bool = True) -> DataSource:
        validate_source(source)
        if test_connection:
            self.connectors.for_source(source).test_connection(source)
        with self._lock:
            replaced = source.id in self._sources
            self._sources[source.id] = source
        self._log.info("%s source %s (%s) tenant=%s", "Replaced" if replaced else "Registered", source.id, source.type, source.tenant_id)
        return source

    def get(self, source_id: str) -> DataSource:
        with self._lock:
            src = self._sources.get(source_id)
        if src is None:
            raise SourceNotFound(f"Source not found: {source_id}", source_id=source_id)
        return src

    def find(self, source_id: str) -> Optional[DataSource]:
        with self._lock:
            return self._sources.get(source_id)

    def list(self, tenant_id: Optional[str] = None) -> List[DataSource]:
        with self._lock:
            items = list(self._sources.values())
        if tenant_id is not None:
            items = [s for s in items if s.tenant_id == tenant_id]
        return items

    def deactivate(self, source_id: str) -> DataSource:
        src = self.get(source_id)
        with self._lock:
            self._sources[source_id] = updated = replace(src, is_active=False)
        return updated

    def mark_ingested(self, source_id: str, when: datetime) -> None:
        with self._lock:
            src = self._sources.get(source_id)
            if src is not None:
                self._sources[source_id] = replace(src, last_ingested=when)
