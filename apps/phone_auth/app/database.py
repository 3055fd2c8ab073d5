from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


SessionFactory = Callable[[], Session]


def build_engine(url: str, timeout_secs: int = 5) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout_secs}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)
    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": timeout_secs,
            "options": f"-c statement_timeout={timeout_secs * 1000}",
        }
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=timeout_secs,
        connect_args=connect_args,
        future=True,
    )


engine = build_engine(settings.DB_URL, settings.DB_TIMEOUT_SECS)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@contextmanager
def session_scope(factory: SessionFactory = SessionLocal) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dialect_insert(session: Session, table):
    """Return an INSERT construct that supports ``ON CONFLICT`` for the bound dialect.

    Upserts are how durable counters stay correct with several app instances
    writing the same key; only PostgreSQL and SQLite are supported.
    """
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"atomic upsert not available for dialect {name!r}")
