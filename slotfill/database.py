"""
Database initialization and session management
Provides connection pooling and session lifecycle management
"""
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session
from contextlib import contextmanager
from typing import Generator
import logging

from slotfill.config import get_config
from slotfill import db_models  # noqa: F401  registers tables on SQLModel.metadata

logger = logging.getLogger(__name__)

# Global engine instance
_engine = None

# Bot and standalone sweeper may write the same SQLite file at once
SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_connection, _connection_record) -> None:
    """Let concurrent writers wait for the lock instead of failing"""
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.close()


def get_engine():
    """Get or create the global database engine"""
    global _engine
    if _engine is None:
        config = get_config()
        database_url = config.get_database_url()

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # Needed for SQLite

        _engine = create_engine(
            database_url,
            echo=False,  # Set to True for SQL debugging
            connect_args=connect_args,
            pool_pre_ping=True,
        )

        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            event.listen(_engine, "connect", _configure_sqlite)

        logger.info(f"Database engine created: {database_url.split('@')[-1]}")

    return _engine


def init_database() -> None:
    """
    Initialize database tables
    Creates all tables and indexes if they don't exist
    """
    engine = get_engine()
    SQLModel.metadata.create_all(engine)
    logger.info("Database tables initialized")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Get a database session with automatic commit/rollback

    Usage:
        with get_session() as session:
            entry = session.get(WaitlistEntry, entry_id)
            ...

    Yields:
        Session: SQLModel session
    """
    engine = get_engine()
    session = Session(engine, expire_on_commit=False)

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_database() -> None:
    """Close database connections"""
    global _engine
    if _engine:
        _engine.dispose()
        _engine = None
        logger.info("Database connections closed")
