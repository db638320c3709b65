from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import MetaData, Table, select
from sqlalchemy.engine import Engine

from ..models import EnrichmentConfig

log = logging.getLogger(__name__)

Row = Dict[str, Any]


class EnrichmentSource(ABC):
    """Named side source consulted by lookups and joins."""

    @abstractmethod
    async def lookup(self, key: Any, field: str | None = None) -> Any:  # pragma: no cover
        """Value stored under ``key`` (or its ``field`` when rows are mappings)."""
        ...

    @abstractmethod
    async def match(self, field: str, value: Any) -> Optional[Row]:  # pragma: no cover
        """First row whose ``field`` equals ``value``."""
        ...


class StaticEnrichmentSource(EnrichmentSource):
    def __init__(self, rows: Iterable[Row] | Mapping[Any, Any], key_field: str = "id") -> None:
        self.key_field = key_field
        if isinstance(rows, Mapping):
            self._by_key: Dict[Any, Any] = dict(rows)
            self._rows: List[Row] = [v for v in self._by_key.values() if isinstance(v, dict)]
        else:
            self._rows = [dict(r) for r in rows]
            self._by_key = {r.get(key_field): r for r in self._rows}

    async def lookup(self, key: Any, field: str | None = None) -> Any:
        hit = self._by_key.get(key)
        if hit is not None and field and isinstance(hit, dict):
            return hit.get(field)
        return hit

    async def match(self, field: str, value: Any) -> Optional[Row]:
        for r in self._rows:
            if r.get(field) == value:
                return dict(r)
        return None


class SqlEnrichmentSource(EnrichmentSource):
    """Reflects a table and answers lookups with single-row selects."""

    def __init__(self, engine: Engine, table_name: str, key_field: str = "id", schema: str | None = None) -> None:
        self.engine = engine
        self.table_name = table_name
        self.key_field = key_field
        self.schema = schema
        self._table: Optional[Table] = None

    def _tbl(self) -> Table:
        if self._table is None:
            self._table = Table(self.table_name, MetaData(), autoload_with=self.engine, schema=self.schema)
        return self._table

    def _first(self, field: str, value: Any) -> Optional[Row]:
        tbl = self._tbl()
        with self.engine.connect() as conn:
            row = conn.execute(select(tbl).where(tbl.c[field] == value).limit(1)).mappings().first()
            return dict(row) if row is not None else None

    async def lookup(self, key: Any, field: str | None = None) -> Any:
        row = await asyncio.to_thread(self._first, self.key_field, key)
        if row is not None and field:
            return row.get(field)
        return row

    async def match(self, field: str, value: Any) -> Optional[Row]:
        return await asyncio.to_thread(self._first, field, value)


class CachedEnrichmentSource(EnrichmentSource):
    """TTL cache in front of a slower source; misses are cached too."""

    def __init__(self, inner: EnrichmentSource, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.inner = inner
        self.ttl = float(ttl)
        self._clock = clock
        self._cache: Dict[Tuple[str, Any, Any], Tuple[float, Any]] = {}

    async def _cached(self, key: Tuple[str, Any, Any], load: Callable[[], Any]) -> Any:
        now = self._clock()
        hit = self._cache.get(key)
        if hit is not None and now - hit[0] < self.ttl:
            return hit[1]
        value = await load()
        self._cache[key] = (now, value)
        return value

    async def lookup(self, key: Any, field: str | None = None) -> Any:
        return await self._cached(("lookup", key, field), lambda: self.inner.lookup(key, field))

    async def match(self, field: str, value: Any) -> Optional[Row]:
        return await self._cached(("match", field, value), lambda: self.inner.match(field, value))


class Enricher:
    def __init__(self, sources: Mapping[str, EnrichmentSource] | None = None) -> None:
        self.sources: Dict[str, EnrichmentSource] = dict(sources or {})
        self._cached: Dict[Tuple[str, float], EnrichmentSource] = {}

    def register(self, source_id: str, source: EnrichmentSource) -> None:
        self.sources[source_id] = source
        self._cached = {k: v for k, v in self._cached.items() if k[0] != source_id}

    def _source(self, source_id: str, config: EnrichmentConfig) -> Optional[EnrichmentSource]:
        src = self.sources.get(source_id)
        if src is None:
            return None
        for sc in config.sources:
            if sc.id == source_id and sc.cache_ttl > 0:
                key = (source_id, sc.cache_ttl)
                if key not in self._cached:
                    self._cached[key] = CachedEnrichmentSource(src, sc.cache_ttl)
                return self._cached[key]
        return src

    async def enrich(self, record: Row, config: EnrichmentConfig) -> Optional[Row]:
        """Apply lookups then joins.

        Unavailable sources leave fields unset. INNER and RIGHT joins drop the
        record when the side source answers without a match.
        """
        out = dict(record)
        if not config.enabled:
            return out

        for lk in config.lookups:
            src = self._source(lk.source_id, config)
            key = record.get(lk.source_field)
            value = None
            if src is None:
                log.warning("Lookup %s: enrichment source %s not registered", lk.name, lk.source_id)
            elif key is not None:
                try:
                    value = await src.lookup(key, lk.lookup_key or None)
                except Exception as e:
                    log.warning("Lookup %s against %s failed: %s", lk.name, lk.source_id, e)
                    continue
            if value is None:
                value = lk.default_value
            if value is not None:
                out[lk.target_field] = value

        for jn in config.joins:
            src = self._source(jn.source_id, config)
            if src is None:
                log.warning("Join %s: enrichment source %s not registered", jn.name, jn.source_id)
                continue
            left = out.get(jn.left_field)
            try:
                row = await src.match(jn.right_field, left) if left is not None else None
            except Exception as e:
                log.warning("Join %s against %s failed: %s", jn.name, jn.source_id, e)
                continue
            if row is None:
                if jn.join_type in ("INNER", "RIGHT"):
                    return None
                continue
            out.update(row)
        return out
