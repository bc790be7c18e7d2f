"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from tutorflow.core.config import settings

logger = logging.getLogger(__name__)


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Pool sizing for server databases; SQLite gets a thread-tolerant connection."""
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "future": True}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "future": True,
    }


def build_engine(db_url: str) -> Engine:
    """Create an engine with the project's connection settings applied."""
    new_engine = create_engine(db_url, **_build_engine_kwargs(db_url))
    if db_url.startswith("sqlite"):
        event.listen(new_engine, "connect", _sqlite_on_connect)
        event.listen(new_engine, "begin", _sqlite_on_begin)
    return new_engine


def _sqlite_on_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside a real transaction.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
    connection_record.info["connect_time"] = datetime.now()


def _sqlite_on_begin(conn: Any) -> None:
    # Take the write lock up front; concurrent writers then wait on busy_timeout
    # instead of failing when a read transaction tries to upgrade.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


db_url = settings.get_database_url()
engine: Engine = build_engine(db_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "engine",
    "get_db",
]
