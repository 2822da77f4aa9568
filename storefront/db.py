import os
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Depends
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from .errors import TransactionFailure
from .utils.logging import get_logger

logger = get_logger(__name__)

DB_USER = os.getenv("DB_USER", "app")
DB_PASS = os.getenv("DB_PASS", "app")
DB_NAME = os.getenv("DB_NAME", "appdb")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_SCHEMA = os.getenv("DB_SCHEMA", "storefront")

# Upper bound for a checkout unit of work, lock waits included.
CHECKOUT_TIMEOUT_MS = int(os.getenv("CHECKOUT_TIMEOUT_MS", "5000"))

# Use psycopg3; set search_path so unqualified tables use our schema
options = f"-csearch_path={DB_SCHEMA},public"
DATABASE_URL = os.getenv("DATABASE_URL") or (
    f"postgresql+psycopg://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    f"?options={options}"
)


def make_engine(url: str) -> Engine:
    """
    Build an engine for ``url``.

    SQLite has no row-level locks, so every transaction is opened with
    ``BEGIN IMMEDIATE``: writers then queue on the database lock the same
    way PostgreSQL checkouts queue on ``FOR UPDATE`` row locks.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, future=True)

    eng = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": CHECKOUT_TIMEOUT_MS / 1000},
    )

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind: Optional[Engine] = None):
    """
    Ensure the schema exists, then create tables (idempotent).
    Called once at application startup.
    """
    bind = bind or engine
    if bind.dialect.name == "postgresql":
        with bind.begin() as conn:
            # Quote the schema to avoid edge cases with names
            conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{DB_SCHEMA}"'))
    # Import here to avoid circulars
    from .models import Base  # noqa
    Base.metadata.create_all(bind=bind)


def get_sessionmaker() -> sessionmaker:
    """FastAPI dependency: the session factory used for new units of work."""
    return SessionLocal


def get_session(factory: sessionmaker = Depends(get_sessionmaker)) -> Iterator[Session]:
    """
    FastAPI dependency: yields a DB session, commits on success, rolls back on error.
    """
    s = factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def _apply_timeouts(session: Session, timeout_ms: int) -> None:
    # PostgreSQL reads a zero timeout as "no timeout"
    if timeout_ms <= 0 or session.get_bind().dialect.name != "postgresql":
        return
    # SET LOCAL does not accept bind parameters; timeout_ms is an int
    session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))
    session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


@contextmanager
def unit_of_work(factory: Optional[sessionmaker] = None, timeout_ms: Optional[int] = None) -> Iterator[Session]:
    """
    Scope an atomic unit of work.

    The session is committed exactly once when the block exits normally and
    before the deadline; any exception, or an expired deadline, rolls the
    whole unit back. Driver errors surface as ``TransactionFailure``.
    A non-positive ``timeout_ms`` leaves the unit of work unbounded.
    """
    timeout_ms = CHECKOUT_TIMEOUT_MS if timeout_ms is None else timeout_ms
    deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms > 0 else None
    s = (factory or SessionLocal)()
    try:
        _apply_timeouts(s, timeout_ms)
        yield s
        if deadline is not None and time.monotonic() > deadline:
            raise TransactionFailure(f"unit of work exceeded {timeout_ms}ms")
        s.commit()
    except DBAPIError as exc:
        s.rollback()
        logger.warning("Unit of work aborted by the database", error=str(exc.orig))
        raise TransactionFailure("database could not complete the transaction") from exc
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
