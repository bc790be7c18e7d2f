# backend/tutorflow/models/lesson.py
"""Lesson model: one occurrence of a class, backed by exactly one schedule entry."""

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from tutorflow.core.enums import LessonStatus
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import UTCDateTime, utc_now


class Lesson(Base):
    __tablename__ = "lessons"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_id = Column(
        String(26), ForeignKey("classes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    title = Column(String(200), nullable=False)
    status = Column(
        create_safe_enum(LessonStatus, "lesson_status"),
        nullable=False,
        default=LessonStatus.SCHEDULED,
        index=True,
    )
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    tutor_class = relationship("TutorClass", back_populates="lessons")
    schedule_entry = relationship("ScheduleEntry", back_populates="lesson", uselist=False)
    reschedule_requests = relationship("RescheduleRequest", back_populates="lesson")

    __table_args__ = (UniqueConstraint("class_id", "sequence", name="uq_lessons_class_sequence"),)

    def __repr__(self) -> str:
        return f"<Lesson {self.id}: class={self.class_id} #{self.sequence} {self.status}>"
