from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional

from ..checksums import checksum
from ..models import DataSchema, DeduplicationConfig

Row = Dict[str, Any]

# (record, dedup_key) -> record to write instead, or None to drop it
DuplicateHandler = Callable[[Row, str], Awaitable[Optional[Row]]]


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split()).lower()
    if isinstance(value, dict):
        return {str(k).lower(): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def dedup_key(record: Row, config: DeduplicationConfig, schema: DataSchema | None = None) -> str:
    strategy = config.strategy
    fields = list(config.key_fields)
    if strategy == "PRIMARY_KEY" and not fields and schema is not None:
        fields = [schema.primary_key]
    if strategy in ("PRIMARY_KEY", "CUSTOM") and fields:
        values = [record.get(f) for f in fields]
        if all(v is not None for v in values):
            return "k:" + checksum(values)
    if strategy == "FINGERPRINT":
        return "f:" + checksum(_normalize(record))
    return "h:" + checksum(record)


class DedupStore(ABC):
    @abstractmethod
    async def seen(self, scope: str, key: str) -> bool:  # pragma: no cover
        ...

    @abstractmethod
    async def mark(self, scope: str, key: str, window: int = 0) -> bool:  # pragma: no cover
        """Remember ``key``; False when it was already remembered."""
        ...


class MemoryDedupStore(DedupStore):
    def __init__(self) -> None:
        self._scopes: Dict[str, "OrderedDict[str, None]"] = {}

    async def seen(self, scope: str, key: str) -> bool:
        return key in self._scopes.get(scope, {})

    async def mark(self, scope: str, key: str, window: int = 0) -> bool:
        keys = self._scopes.setdefault(scope, OrderedDict())
        if key in keys:
            keys.move_to_end(key)
            return False
        keys[key] = None
        if window > 0:
            while len(keys) > window:
                keys.popitem(last=False)
        return True


class RedisDedupStore(DedupStore):
    """Redis-backed dedup window.

    Keys (namespace = ns):
        ns:dedup:<scope>  -> ZSET of dedup keys scored by first-seen epoch
    """

    def __init__(self, url: str = "redis://localhost:6379/0", namespace: str = "ingest", client: Any = None) -> None:
        self.url = url
        self.ns = namespace
        self._client = client

    def _r(self):  # lazy import
        if self._client is None:
            try:
                import redis.asyncio as redis  # type: ignore
            except Exception as e:  # pragma: no cover - optional dependency
                raise RuntimeError("redis-py not installed. Install 'redis' package to use RedisDedupStore") from e
            self._client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        return self._client

    def _k(self, scope: str) -> str:
        return f"{self.ns}:dedup:{scope}"

    async def seen(self, scope: str, key: str) -> bool:
        r = self._r()
        return (await r.zscore(self._k(scope), key)) is not None

    async def mark(self, scope: str, key: str, window: int = 0) -> bool:
        r = self._r()
        zkey = self._k(scope)
        added = await r.zadd(zkey, {key: time.time()}, nx=True)
        if window > 0:
            await r.zremrangebyrank(zkey, 0, -(window + 1))
        return bool(added)

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
