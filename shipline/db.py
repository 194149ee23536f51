"""Run database for shipline.

Runs are written from several places at once: one worker thread per
environment, the HTTP API, and CLI processes cancelling or inspecting
runs. SQLite databases are therefore opened with connections shared across
threads, WAL journaling and a busy timeout, so a writer waits for a lock
instead of failing with "database is locked".
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shipline.config import get_settings

logger = logging.getLogger(__name__)

# Milliseconds a SQLite connection waits on a locked database
SQLITE_BUSY_TIMEOUT_MS = 30_000

MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Base(DeclarativeBase):
    pass


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the run database.

    File-backed SQLite databases get their parent directory created. An
    in-memory URL is bound to one static connection so that every worker
    thread sees the same database.

    Args:
        db_url: Database URL; the configured ``db_url`` if not provided.
    """
    if db_url is None:
        db_url = get_settings().db_url

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if db_url in MEMORY_URLS:
        options["poolclass"] = StaticPool
    else:
        Path(db_url.removeprefix("sqlite:///")).parent.mkdir(
            parents=True, exist_ok=True
        )
    engine = create_engine(db_url, **options)
    event.listen(engine, "connect", _configure_sqlite)
    logger.debug("Opened run database %s", db_url)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory.

    Objects stay usable after commit, which lets callers return run
    records from a closed session.
    """
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Commit on success, roll back on any exception, always close."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the runs and stage_attempts tables if they are missing."""
    from shipline.runs import models  # noqa: F401

    Base.metadata.create_all(bind=engine if engine is not None else get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
