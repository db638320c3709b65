from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, Dict, Iterable, Optional, Union

from ..models import DataSource, IngestionJob


Row = Dict[str, Any]
RecordStream = Union[Iterable[Row], AsyncIterable[Row]]


class SourceConnector(ABC):
    @abstractmethod
    def open(self, source: DataSource, job: IngestionJob) -> RecordStream:
        """Return a lazy, finite, non-restartable stream of raw records."""
        raise NotImplementedError

    def test_connection(self, source: DataSource) -> None:
        """Raise ConnectorError when the source is unreachable."""
        return None

    def expected_total(self, source: DataSource, job: IngestionJob) -> Optional[int]:
        return None


def option(source: DataSource, key: str, default: Any = None) -> Any:
    return (source.connection.options or {}).get(key, default)
