"""Session helpers for short-lived units of work outside a request."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session

from . import SessionLocal


@contextmanager
def get_db_session(
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """Context manager for short-lived DB operations (tasks, sweeps)."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ["get_db_session"]
