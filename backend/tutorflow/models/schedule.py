# backend/tutorflow/models/schedule.py
"""
Tutor calendar models.

``schedule_entries`` is the tutor availability index: every committed
interval on a tutor's calendar, either a lesson occurrence or a
self-declared block. Live entries for one tutor never overlap on the
half-open interval [start_at, end_at).
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship

from tutorflow.core.enums import ScheduleEntryType
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import UTCDateTime, utc_now


class RecurringScheduleRule(Base):
    """
    Weekly template: a weekday and a wall-clock window, no date.

    Attached to exactly one owner, either a class request or a class.
    ``day_of_week`` follows ``date.weekday()``: Monday is 0.
    """

    __tablename__ = "recurring_schedule_rules"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_request_id = Column(
        String(26), ForeignKey("class_requests.id", ondelete="CASCADE"), nullable=True, index=True
    )
    class_id = Column(
        String(26), ForeignKey("classes.id", ondelete="CASCADE"), nullable=True, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_schedule_rules_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_schedule_rules_time_order"),
        CheckConstraint(
            "(class_request_id IS NULL) <> (class_id IS NULL)",
            name="ck_schedule_rules_single_owner",
        ),
    )

    def __repr__(self) -> str:
        return f"<RecurringScheduleRule {self.day_of_week} {self.start_time}-{self.end_time}>"


class AvailabilityBlock(Base):
    """A tutor's recurring weekly busy window, materialized as BLOCK entries."""

    __tablename__ = "availability_blocks"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    tutor_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    notes = Column(Text, nullable=True)
    # [{"day_of_week": 0, "start_time": "08:00:00", "end_time": "10:00:00"}, ...]
    rules = Column(JSON, nullable=False, default=list)
    start_date = Column(Date, nullable=False)
    until_date = Column(Date, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    deleted_at = Column(UTCDateTime, nullable=True)

    entries = relationship("ScheduleEntry", back_populates="block")

    __table_args__ = (
        CheckConstraint("start_date <= until_date", name="ck_availability_blocks_date_order"),
    )


class ScheduleEntry(Base):
    """
    Committed interval on a tutor's calendar.

    Tagged union on ``entry_type``: a LESSON entry carries ``lesson_id`` and no
    ``block_id``; a BLOCK entry carries ``block_id`` and no ``lesson_id``.
    """

    __tablename__ = "schedule_entries"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    tutor_id = Column(String(64), nullable=False)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    entry_type = Column(create_safe_enum(ScheduleEntryType, "schedule_entry_type"), nullable=False)
    lesson_id = Column(
        String(26), ForeignKey("lessons.id", ondelete="CASCADE"), nullable=True, unique=True
    )
    block_id = Column(
        String(26), ForeignKey("availability_blocks.id", ondelete="CASCADE"), nullable=True
    )
    deleted_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    lesson = relationship("Lesson", back_populates="schedule_entry")
    block = relationship("AvailabilityBlock", back_populates="entries")

    __table_args__ = (
        CheckConstraint("start_at < end_at", name="ck_schedule_entries_time_order"),
        CheckConstraint(
            "(entry_type = 'lesson' AND lesson_id IS NOT NULL AND block_id IS NULL) OR "
            "(entry_type = 'block' AND block_id IS NOT NULL AND lesson_id IS NULL)",
            name="ck_schedule_entries_payload",
        ),
        Index("ix_schedule_entries_tutor_window", "tutor_id", "start_at", "end_at"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return (
            f"<ScheduleEntry {self.id}: tutor={self.tutor_id} {self.entry_type} "
            f"{self.start_at}-{self.end_at}>"
        )


class TutorScheduleLock(Base):
    """One row per tutor, locked FOR UPDATE around every schedule write."""

    __tablename__ = "tutor_schedule_locks"

    tutor_id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
