from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ingest_core.connectors import ConnectorRegistry, IterableConnector
from ingest_core.errors import ConnectorError, EncryptionConfigInvalid, InvalidSourceConfig, SourceNotFound
from ingest_core.models import DataSchema, DataSource, EncryptionConfig, SchemaField
from ingest_core.sources import SourceRegistry, validate_source


def _src(**kw) -> DataSource:
    base = dict(id="s1", name="s1", type="EVENT_STREAM", schema=DataSchema(fields=[SchemaField("id")]), tenant_id="T1")
    base.update(kw)
    return DataSource(**base)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "kw",
    [
        {"name": ""},
        {"type": "KAFKA"},
        {"schema": DataSchema(fields=[])},
        {"schema": DataSchema(fields=[SchemaField("id"), SchemaField("id")])},
    ],
)
def test_invalid_sources_are_rejected(kw):
    with pytest.raises(InvalidSourceConfig):
        validate_source(_src(**kw))


def test_encryption_without_key_is_its_own_error():
    schema = DataSchema(fields=[SchemaField("id")], encryption=EncryptionConfig(enabled=True))
    with pytest.raises(EncryptionConfigInvalid) as ei:
        validate_source(_src(schema=schema))
    assert ei.value.code == "ENCRYPTION_CONFIG_INVALID"


def test_registry_tests_connection_and_replaces_by_id():
    streams = IterableConnector()
    reg = SourceRegistry(ConnectorRegistry.default(streams))
    with pytest.raises(ConnectorError):
        reg.register(_src())
    streams.register("s1", [])
    reg.register(_src())
    reg.register(_src(name="renamed"))
    assert reg.get("s1").name == "renamed"
    assert len(reg.list()) == 1
    assert reg.list("T2") == []
    with pytest.raises(SourceNotFound):
        reg.get("missing")
    assert reg.find("missing") is None


def test_deactivate_and_mark_ingested():
    reg = SourceRegistry(ConnectorRegistry.default(IterableConnector({"s1": []})))
    reg.register(_src())
    when = datetime(2024, 5, 1, tzinfo=timezone.utc)
    reg.mark_ingested("s1", when)
    assert reg.get("s1").last_ingested == when
    assert reg.deactivate("s1").is_active is False
    assert reg.get("s1").is_active is False
