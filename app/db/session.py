"""Database engine and session management.

This module provides SQLAlchemy engine and session helpers:
- create_db_engine(): engine for a database URL
- create_session_factory(): session factory bound to an engine
- session_scope(): context manager committing on success
- init_database(): idempotent table creation

The engine is built once at startup and injected into the history store,
never held as a module global.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(url: str) -> Engine:
    """Create an engine for the given database URL.

    SQLite: StaticPool for in-memory databases (single shared connection),
    PRAGMAs for file databases.
    PostgreSQL and others: connection pooling with pre-ping.
    """
    if url.startswith("sqlite"):
        engine_kwargs = {
            "echo": False,
            "connect_args": {"check_same_thread": False},
        }
        if _is_memory_sqlite(url):
            from sqlalchemy.pool import StaticPool

            engine_kwargs["poolclass"] = StaticPool
        log.info("Using SQLite database (local development mode)")
    else:
        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,      # Verify connections before use
            "pool_size": 5,
            "max_overflow": 10,
            "pool_recycle": 1800,       # Recycle connections every 30 min
        }
        log.info("Using pooled database connection")

    engine = create_engine(url, **engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Wait up to 5s for locks; WAL for concurrent readers on file DBs."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=5000")
            if not _is_memory_sqlite(url):
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with session_scope(factory) as db:
            db.add(row)

    The session is committed on success and rolled back on exception.
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(engine: Engine) -> None:
    """Create all tables (CREATE IF NOT EXISTS).

    For file-backed SQLite, also ensures the database directory exists.
    """
    from app.db.models import Base

    url = str(engine.url)
    log.info(f"Initializing database at {url.split('@')[-1] if '@' in url else url}")

    if url.startswith("sqlite:///") and not _is_memory_sqlite(url):
        db_path = url.replace("sqlite:///", "", 1)
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=engine)
    log.info("Database tables created successfully")
