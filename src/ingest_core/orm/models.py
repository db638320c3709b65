from __future__ import annotations

from sqlalchemy import BigInteger, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ChainLinkRow(Base):
    __tablename__ = "ingest_chain_links"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    record_hash: Mapped[str] = mapped_column(Text, nullable=False)
    previous: Mapped[str] = mapped_column(Text, nullable=False)
    # ISO-8601 text keeps the offset that went into the link hash
    timestamp: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ingest_chain_links_tenant_pos_idx", "tenant_id", "position", unique=True),
    )
