from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from .checksums import checksum, link_hash, record_hash
from .metrics import chain_appends_total
from .models import ChainLink, DataRecord
from .orm.models import Base, ChainLinkRow
from .orm.session import create_engine_from_url, session_scope


class ChainStore(ABC):
    @abstractmethod
    def last(self, tenant_id: str) -> Optional[ChainLink]:  # pragma: no cover
        ...

    @abstractmethod
    def add(self, link: ChainLink) -> None:  # pragma: no cover
        ...

    @abstractmethod
    def links(self, tenant_id: str) -> List[ChainLink]:  # pragma: no cover
        ...

    @abstractmethod
    def tenants(self) -> List[str]:  # pragma: no cover
        ...


class MemoryChainStore(ChainStore):
    def __init__(self) -> None:
        self._chains: Dict[str, List[ChainLink]] = {}

    def last(self, tenant_id: str) -> Optional[ChainLink]:
        chain = self._chains.get(tenant_id)
        return chain[-1] if chain else None

    def add(self, link: ChainLink) -> None:
        self._chains.setdefault(link.tenant_id, []).append(link)

    def links(self, tenant_id: str) -> List[ChainLink]:
        return list(self._chains.get(tenant_id, []))

    def tenants(self) -> List[str]:
        return sorted(self._chains)


class SqlChainStore(ChainStore):
    """Chain links persisted through SQLAlchemy (SQLite or Postgres)."""

    def __init__(self, url: str | None = None, *, engine: Engine | None = None) -> None:
        if engine is None and not url:
            raise ValueError("SqlChainStore requires a database url or engine")
        self.engine = engine or create_engine_from_url(url)  # type: ignore[arg-type]
        self._ensured = False
        self._log = logging.getLogger(__name__)

    def ensure_table(self) -> None:
        if self._ensured:
            return
        Base.metadata.create_all(self.engine, tables=[ChainLinkRow.__table__])
        self._ensured = True

    @staticmethod
    def _to_link(row: ChainLinkRow) -> ChainLink:
        return ChainLink(
            tenant_id=row.tenant_id,
            index=row.position,
            record_hash=row.record_hash,
            previous=row.previous,
            timestamp=datetime.fromisoformat(row.timestamp),
            link=row.link,
        )

    def last(self, tenant_id: str) -> Optional[ChainLink]:
        self.ensure_table()
        with session_scope(self.engine) as sess:
            row = sess.execute(
                select(ChainLinkRow)
                .where(ChainLinkRow.tenant_id == tenant_id)
                .order_by(ChainLinkRow.position.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_link(row) if row is not None else None

    def add(self, link: ChainLink) -> None:
        self.ensure_table()
        with session_scope(self.engine) as sess:
            sess.add(
                ChainLinkRow(
                    tenant_id=link.tenant_id,
                    position=link.index,
                    record_hash=link.record_hash,
                    previous=link.previous,
                    timestamp=link.timestamp.isoformat(),
                    link=link.link,
                )
            )

    def links(self, tenant_id: str) -> List[ChainLink]:
        self.ensure_table()
        with session_scope(self.engine) as sess:
            rows = sess.execute(
                select(ChainLinkRow).where(ChainLinkRow.tenant_id == tenant_id).order_by(ChainLinkRow.position)
            ).scalars().all()
            out = [self._to_link(r) for r in rows]
            self._log.debug("Loaded %d chain links for tenant=%s", len(out), tenant_id)
            return out

    def tenants(self) -> List[str]:
        self.ensure_table()
        with session_scope(self.engine) as sess:
            rows = sess.execute(
                select(ChainLinkRow.tenant_id).group_by(ChainLinkRow.tenant_id).having(func.count() > 0)
            ).all()
            return sorted(str(r[0]) for r in rows)


@dataclass(frozen=True)
class ChainVerification:
    ok: bool
    length: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None


def verify_chain(links: Sequence[ChainLink]) -> ChainVerification:
    """Recompute every link and check that each one embeds its predecessor."""
    previous = ""
    for pos, lk in enumerate(links):
        if lk.index != pos:
            return ChainVerification(ok=False, length=len(links), broken_at=pos, reason="index gap or reorder")
        if lk.previous != previous:
            return ChainVerification(ok=False, length=len(links), broken_at=pos, reason="previous link mismatch")
        if link_hash(lk.record_hash, lk.previous, lk.timestamp) != lk.link:
            return ChainVerification(ok=False, length=len(links), broken_at=pos, reason="link hash mismatch")
        previous = lk.link
    return ChainVerification(ok=True, length=len(links))


def verify_records(records: Sequence[DataRecord], links: Sequence[ChainLink]) -> ChainVerification:
    """Check stored records against the chain, one record per link in order.

    Catches payloads edited after append, which ``verify_chain`` alone cannot see.
    """
    result = verify_chain(links)
    if not result.ok:
        return result
    for pos, (rec, lk) in enumerate(zip(records, links)):
        reason = None
        if checksum(rec.data) != rec.metadata.checksum:
            reason = "record payload mismatch"
        elif record_hash(rec.id, rec.tenant_id, rec.source_id, rec.job_id, rec.data, rec.metadata.checksum) != rec.hash:
            reason = "record hash mismatch"
        elif rec.hash != lk.record_hash or rec.link_hash != lk.link:
            reason = "record not at this chain position"
        if reason is not None:
            return ChainVerification(ok=False, length=len(links), broken_at=pos, reason=reason)
    if len(records) != len(links):
        pos = min(len(records), len(links))
        return ChainVerification(ok=False, length=len(links), broken_at=pos, reason="record count differs from chain")
    return ChainVerification(ok=True, length=len(links))


class HashChainLedger:
    """Per-tenant append-only chain of link hashes.

    Every ``append`` extends the chain; callers must call it exactly once per
    finalized record. Tenant chains never reference each other.
    """

    def __init__(self, store: ChainStore | None = None) -> None:
        self.store = store or MemoryChainStore()
        self._lock = threading.Lock()
        self._log = logging.getLogger(__name__)

    def append(self, tenant_id: str, record_hash: str, timestamp: datetime) -> ChainLink:
        with self._lock:
            last = self.store.last(tenant_id)
            previous = last.link if last is not None else ""
            index = last.index + 1 if last is not None else 0
            link = ChainLink(
                tenant_id=tenant_id,
                index=index,
                record_hash=record_hash,
                previous=previous,
                timestamp=timestamp,
                link=link_hash(record_hash, previous, timestamp),
            )
            self.store.add(link)
        chain_appends_total.inc()
        self._log.debug("Chain append tenant=%s index=%d", tenant_id, index)
        return link

    def get_chain(self, tenant_id: str) -> List[str]:
        return [lk.link for lk in self.store.links(tenant_id)]

    def get_links(self, tenant_id: str) -> List[ChainLink]:
        return self.store.links(tenant_id)

    def tenants(self) -> List[str]:
        return self.store.tenants()

    def verify(self, tenant_id: str) -> ChainVerification:
        return verify_chain(self.store.links(tenant_id))
