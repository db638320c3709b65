from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..errors import ConnectorError
from ..models import DataSource, IngestionJob
from .base import Row, SourceConnector, option


def source_path(source: DataSource) -> Path:
    raw = option(source, "path") or source.connection.database
    if not raw:
        raise ConnectorError(f"FILE source {source.id} has no path", source_id=source.id)
    return Path(str(raw)).expanduser()


class _FileConnector(SourceConnector):
    def test_connection(self, source: DataSource) -> None:
        p = source_path(source)
        if not p.is_file():
            raise ConnectorError(f"File not found: {p}", source_id=source.id)


@dataclass
class JsonLinesFileConnector(_FileConnector):
    encoding: str = "utf-8"

    def open(self, source: DataSource, job: IngestionJob) -> Iterator[Row]:
        return self._read(source_path(source), source.id)

    def _read(self, path: Path, source_id: str) -> Iterator[Row]:
        log = logging.getLogger(__name__)
        log.info("Reading JSON lines: source=%s path=%s", source_id, path)
        with path.open("r", encoding=self.encoding) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except ValueError as e:
                    raise ConnectorError(f"{path}:{lineno}: invalid JSON: {e}", source_id=source_id) from e
                if not isinstance(item, dict):
                    raise ConnectorError(f"{path}:{lineno}: expected an object", source_id=source_id)
                yield item


@dataclass
class CsvFileConnector(_FileConnector):
    encoding: str = "utf-8"
    delimiter: str = ","

    def open(self, source: DataSource, job: IngestionJob) -> Iterator[Row]:
        delimiter = option(source, "delimiter", self.delimiter)
        return self._read(source_path(source), source.id, delimiter)

    def _read(self, path: Path, source_id: str, delimiter: str) -> Iterator[Row]:
        log = logging.getLogger(__name__)
        log.info("Reading CSV: source=%s path=%s", source_id, path)
        with path.open("r", encoding=self.encoding, newline="") as f:
            for row in csv.DictReader(f, delimiter=delimiter):
                # empty cells become missing values
                yield {k: (v if v != "" else None) for k, v in row.items() if k is not None}


@dataclass
class FileConnector(_FileConnector):
    """Picks the reader from the ``format`` option or the file suffix."""

    encoding: str = "utf-8"

    def open(self, source: DataSource, job: IngestionJob) -> Iterator[Row]:
        fmt = str(option(source, "format") or source_path(source).suffix.lstrip(".")).lower()
        if fmt == "csv":
            return CsvFileConnector(encoding=self.encoding).open(source, job)
        if fmt in ("jsonl", "ndjson", "json"):
            return JsonLinesFileConnector(encoding=self.encoding).open(source, job)
        raise ConnectorError(f"Unsupported file format: {fmt}", source_id=source.id)
