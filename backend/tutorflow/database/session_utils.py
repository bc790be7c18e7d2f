"""
Helpers for working with SQLAlchemy sessions in a dialect-agnostic way.
"""

from __future__ import annotations

from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """Return the bound dialect name, or ``default`` for an unbound session."""
    bind = session.get_bind()
    if bind is None:
        return default
    return bind.dialect.name or default

