# backend/tutorflow/models/base_enum.py
"""
Safe enum helpers for SQLAlchemy.

Columns built here persist enum VALUES ('pending'), not member NAMES
('PENDING'), so raw SQL, migrations and ORM queries agree on what is stored.

Usage:
    status = Column(
        create_safe_enum(ClassStatus, "class_status"),
        nullable=False,
        default=ClassStatus.PENDING,
    )
"""

from enum import Enum
from typing import Sequence, Type

from sqlalchemy import Enum as SAEnum


def create_safe_enum(
    enum_class: Type[Enum],
    name: str,
    *,
    native_enum: bool = False,
    validate_strings: bool = True,
) -> SAEnum:
    """
    Create a SQLAlchemy Enum that stores enum values.

    Non-native by default: a VARCHAR plus CHECK constraint, which behaves the
    same on PostgreSQL and SQLite and needs no ``CREATE TYPE`` in migrations.
    """
    return SAEnum(
        enum_class,
        name=name,
        native_enum=native_enum,
        create_constraint=not native_enum,
        validate_strings=validate_strings,
        values_callable=_get_enum_values,
        length=32,
    )


def _get_enum_values(enum_class: Type[Enum]) -> Sequence[str]:
    return [member.value for member in enum_class]
