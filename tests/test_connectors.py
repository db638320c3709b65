from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests
from sqlalchemy import create_engine, text

from ingest_core.connectors import (
    ConnectorRegistry,
    CsvFileConnector,
    FileConnector,
    HttpApiConnector,
    IterableConnector,
    JsonLinesFileConnector,
    SqlTableConnector,
)
from ingest_core.errors import ConnectorError
from ingest_core.models import ConnectionConfig, DataSchema, DataSource, IngestionJob, JobConfig, SchemaField


SCHEMA = DataSchema(fields=[SchemaField("id")])
NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _source(type_: str, **options) -> DataSource:
    creds = options.pop("credentials", None)
    return DataSource(
        id="s1",
        name="s1",
        type=type_,  # type: ignore[arg-type]
        schema=SCHEMA,
        connection=ConnectionConfig(options=options, credentials=creds),
    )


def _job() -> IngestionJob:
    return IngestionJob(
        id="J1", name="j", source_id="s1", tenant_id="T1", type="BATCH", priority="MEDIUM",
        config=JobConfig(), created_at=NOW,
    )


# -- files ----------------------------------------------------------------------


def test_jsonl_reads_objects_and_skips_blank_lines(tmp_path):
    p = tmp_path / "in.jsonl"
    p.write_text('{"id": 1}\n\n{"id": 2, "x": "y"}\n', encoding="utf-8")
    rows = list(JsonLinesFileConnector().open(_source("FILE", path=str(p)), _job()))
    assert rows == [{"id": 1}, {"id": 2, "x": "y"}]


def test_jsonl_invalid_line_raises_connector_error(tmp_path):
    p = tmp_path / "bad.jsonl"
    p.write_text('{"id": 1}\nnot json\n', encoding="utf-8")
    it = JsonLinesFileConnector().open(_source("FILE", path=str(p)), _job())
    assert next(it) == {"id": 1}
    with pytest.raises(ConnectorError) as ei:
        next(it)
    assert "bad.jsonl:2" in str(ei.value)


def test_csv_empty_cells_become_none_and_delimiter_option(tmp_path):
    p = tmp_path / "in.csv"
    p.write_text("id;name\n1;Ada\n2;\n", encoding="utf-8")
    rows = list(CsvFileConnector().open(_source("FILE", path=str(p), delimiter=";"), _job()))
    assert rows == [{"id": "1", "name": "Ada"}, {"id": "2", "name": None}]


def test_file_connector_dispatches_on_suffix_and_format(tmp_path):
    csv_p = tmp_path / "a.csv"
    csv_p.write_text("id\n1\n", encoding="utf-8")
    txt_p = tmp_path / "a.txt"
    txt_p.write_text('{"id": 1}\n', encoding="utf-8")
    fc = FileConnector()
    assert list(fc.open(_source("FILE", path=str(csv_p)), _job())) == [{"id": "1"}]
    assert list(fc.open(_source("FILE", path=str(txt_p), format="jsonl"), _job())) == [{"id": 1}]
    with pytest.raises(ConnectorError):
        fc.open(_source("FILE", path=str(txt_p)), _job())


def test_file_test_connection_requires_existing_file(tmp_path):
    with pytest.raises(ConnectorError):
        FileConnector().test_connection(_source("FILE", path=str(tmp_path / "missing.csv")))
    with pytest.raises(ConnectorError):
        FileConnector().test_connection(_source("FILE"))


# -- http -----------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int, body=None, bad_json: bool = False) -> None:
        self.status_code = status_code
        self._body = body
        self._bad = bad_json

    def json(self):
        if self._bad:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, pages) -> None:
        self.pages = list(pages)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append((url, dict(params or {}), dict(headers or {})))
        if not self.pages:
            return FakeResponse(200, {"data": []})
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


def test_http_follows_page_param_until_empty_page():
    session = FakeSession(
        [
            FakeResponse(200, {"data": [{"id": 1}, {"id": 2}]}),
            FakeResponse(200, {"data": [{"id": 3}]}),
            FakeResponse(200, {"data": []}),
        ]
    )
    src = _source("API", url="https://api.test/items", records_path="data", page_param="page",
                  page_size_param="limit", page_size=2, credentials={"token": "s3cret"})
    rows = list(HttpApiConnector(session).open(src, _job()))
    assert [r["id"] for r in rows] == [1, 2, 3]
    assert [c[1]["page"] for c in session.calls] == [1, 2, 3]
    assert session.calls[0][1]["limit"] == 2
    assert session.calls[0][2]["Authorization"] == "Bearer s3cret"


def test_http_follows_next_link():
    session = FakeSession(
        [
            FakeResponse(200, {"items": [{"id": 1}], "links": {"next": "https://api.test/p2"}}),
            FakeResponse(200, {"items": [{"id": 2}], "links": {"next": None}}),
        ]
    )
    src = _source("API", url="https://api.test/p1", records_path="items", next_path="links.next")
    rows = list(HttpApiConnector(session).open(src, _job()))
    assert rows == [{"id": 1}, {"id": 2}]
    assert session.calls[1][0] == "https://api.test/p2"


@pytest.mark.parametrize(
    "page",
    [
        FakeResponse(503, {}),
        FakeResponse(200, bad_json=True),
        FakeResponse(200, {"data": {"not": "a list"}}),
        requests.ConnectionError("refused"),
    ],
)
def test_http_failures_raise_connector_error(page):
    src = _source("API", url="https://api.test/x", records_path="data")
    with pytest.raises(ConnectorError):
        list(HttpApiConnector(FakeSession([page])).open(src, _job()))


# -- sql ------------------------------------------------------------------------


def _sqlite(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'src.db'}")
    with eng.begin() as conn:
        conn.execute(text("CREATE TABLE orders (id INTEGER PRIMARY KEY, amount REAL, updated_at TEXT)"))
        conn.execute(
            text("INSERT INTO orders (id, amount, updated_at) VALUES (1, 9.5, '2024-01-01'), (2, 20, '2024-03-01')")
        )
    return eng


def test_sql_streams_rows_and_counts(tmp_path):
    eng = _sqlite(tmp_path)
    conn = SqlTableConnector({"s1": eng})
    src = _source("DATABASE", table="orders")
    conn.test_connection(src)
    assert conn.expected_total(src, _job()) == 2
    rows = list(conn.open(src, _job()))
    assert [r["id"] for r in rows] == [1, 2]
    assert rows[0]["amount"] == 9.5


def test_sql_since_field_reads_only_newer_rows(tmp_path):
    eng = _sqlite(tmp_path)
    conn = SqlTableConnector({"s1": eng})
    src = _source("DATABASE", table="orders", since_field="updated_at")
    src.last_ingested = "2024-02-01"  # type: ignore[assignment]
    assert [r["id"] for r in conn.open(src, _job())] == [2]
    assert conn.expected_total(src, _job()) == 1


def test_sql_missing_table_option_and_url(tmp_path):
    eng = _sqlite(tmp_path)
    with pytest.raises(ConnectorError):
        list(SqlTableConnector({"s1": eng}).open(_source("DATABASE"), _job()))
    with pytest.raises(ConnectorError):
        SqlTableConnector().test_connection(_source("DATABASE", table="orders"))


def test_sql_url_option_builds_engine(tmp_path):
    _sqlite(tmp_path)
    src = _source("DATABASE", url=f"sqlite:///{tmp_path / 'src.db'}", table="orders")
    assert len(list(SqlTableConnector().open(src, _job()))) == 2


# -- iterable and registry ------------------------------------------------------


def test_iterable_connector_lists_and_factories():
    it = IterableConnector({"s1": [{"id": 1}, {"id": 2}]})
    src = _source("EVENT_STREAM")
    assert it.expected_total(src, _job()) == 2
    assert list(it.open(src, _job())) == [{"id": 1}, {"id": 2}]
    assert list(it.open(src, _job())) == [{"id": 1}, {"id": 2}]

    it.register("s1", lambda source, job: ({"id": i, "job": job.id} for i in range(2)))
    assert it.expected_total(src, _job()) is None
    assert list(it.open(src, _job())) == [{"id": 0, "job": "J1"}, {"id": 1, "job": "J1"}]


def test_registry_prefers_source_override():
    override = IterableConnector({"s1": []})
    reg = ConnectorRegistry.default()
    src = _source("FILE")
    assert isinstance(reg.for_source(src), FileConnector)
    reg.register_source("s1", override)
    assert reg.for_source(src) is override
    with pytest.raises(ConnectorError):
        ConnectorRegistry().for_source(src)
    with pytest.raises(ConnectorError):
        IterableConnector().test_connection(src)
