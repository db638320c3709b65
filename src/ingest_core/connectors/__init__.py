from .base import RecordStream, SourceConnector
from .files import CsvFileConnector, FileConnector, JsonLinesFileConnector
from .http import HttpApiConnector
from .iterable import IterableConnector
from .registry import ConnectorRegistry
from .sql import SqlTableConnector

__all__ = [
    "RecordStream",
    "SourceConnector",
    "CsvFileConnector",
    "FileConnector",
    "JsonLinesFileConnector",
    "HttpApiConnector",
    "IterableConnector",
    "ConnectorRegistry",
    "SqlTableConnector",
]
