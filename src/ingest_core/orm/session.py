from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


@dataclass(frozen=True)
class Db:
    host: str
    port: int
    user: str
    password: str
    database: str
    driver: str = "postgresql+psycopg2"


def make_dsn(db: Db) -> str:
    return f"{db.driver}://{db.user}:{db.password}@{db.host}:{db.port}/{db.database}"


def create_engine_from_url(url: str) -> Engine:
    if url.startswith("sqlite"):
        # streams are drained from worker threads
        args = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            # one shared connection, otherwise every checkout sees an empty database
            return create_engine(url, connect_args=args, poolclass=StaticPool)
        return create_engine(url, connect_args=args)
    return create_engine(url, pool_pre_ping=True)


def create_engine_from_db(db: Db) -> Engine:
    return create_engine_from_url(make_dsn(db))


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    sess = sessionmaker(bind=engine)()
    try:
        yield sess
        sess.commit()
    except Exception:
        sess.rollback()
        raise
    finally:
        sess.close()
