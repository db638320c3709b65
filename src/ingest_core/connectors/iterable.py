from __future__ import annotations

from typing import Callable, Dict, Optional, Union

from ..errors import ConnectorError
from ..models import DataSource, IngestionJob
from .base import RecordStream, SourceConnector

StreamFactory = Callable[[DataSource, IngestionJob], RecordStream]


class IterableConnector(SourceConnector):
    """In-process streams keyed by source id (event streams, audit feeds, tests).

    A registered value is either a factory called once per run or a ready
    iterable, which is consumed by the first run that opens it.
    """

    def __init__(self, streams: Optional[Dict[str, Union[RecordStream, StreamFactory]]] = None) -> None:
        self._streams: Dict[str, Union[RecordStream, StreamFactory]] = dict(streams or {})

    def register(self, source_id: str, stream: Union[RecordStream, StreamFactory]) -> None:
        self._streams[source_id] = stream

    def open(self, source: DataSource, job: IngestionJob) -> RecordStream:
        try:
            stream = self._streams[source.id]
        except KeyError:
            raise ConnectorError(f"No stream registered for source {source.id}", source_id=source.id) from None
        if callable(stream):
            return stream(source, job)
        if isinstance(stream, (list, tuple)):
            return iter(stream)
        return stream

    def test_connection(self, source: DataSource) -> None:
        if source.id not in self._streams:
            raise ConnectorError(f"No stream registered for source {source.id}", source_id=source.id)

    def expected_total(self, source: DataSource, job: IngestionJob) -> Optional[int]:
        stream = self._streams.get(source.id)
        if isinstance(stream, (list, tuple)):
            return len(stream)
        return None
