from __future__ import annotations

from typing import Dict, Optional

from ..errors import ConnectorError
from ..models import DataSource
from .base import SourceConnector
from .files import FileConnector
from .http import HttpApiConnector
from .iterable import IterableConnector
from .sql import SqlTableConnector


class ConnectorRegistry:
    """Resolves the connector of a source: per-source override first, then by type."""

    def __init__(self, by_type: Optional[Dict[str, SourceConnector]] = None) -> None:
        self._by_type: Dict[str, SourceConnector] = dict(by_type or {})
        self._by_source: Dict[str, SourceConnector] = {}

    @classmethod
    def default(cls, streams: IterableConnector | None = None) -> "ConnectorRegistry":
        it = streams or IterableConnector()
        return cls(
            {
                "DATABASE": SqlTableConnector(),
                "FILE": FileConnector(),
                "API": HttpApiConnector(),
                "EVENT_STREAM": it,
                "AUDIT_LOG": it,
            }
        )

    def register_type(self, source_type: str, connector: SourceConnector) -> None:
        self._by_type[source_type] = connector

    def register_source(self, source_id: str, connector: SourceConnector) -> None:
        self._by_source[source_id] = connector

    def for_source(self, source: DataSource) -> SourceConnector:
        conn = self._by_source.get(source.id) or self._by_type.get(source.type)
        if conn is None:
            raise ConnectorError(f"No connector for source type {source.type}", source_id=source.id)
        return conn
