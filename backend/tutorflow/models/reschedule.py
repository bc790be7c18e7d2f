# backend/tutorflow/models/reschedule.py
"""Reschedule negotiation for a single lesson."""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import relationship

from tutorflow.core.enums import RescheduleStatus
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import UTCDateTime, utc_now


class RescheduleRequest(Base):
    """
    Proposal to move one lesson. ``old_*`` snapshots the entry's window at
    creation; accepting applies ``new_*`` to the entry.
    """

    __tablename__ = "reschedule_requests"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    lesson_id = Column(
        String(26), ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    schedule_entry_id = Column(String(26), ForeignKey("schedule_entries.id"), nullable=False)
    requester_id = Column(String(64), nullable=False, index=True)
    responder_id = Column(String(64), nullable=True)
    old_start_at = Column(UTCDateTime, nullable=False)
    old_end_at = Column(UTCDateTime, nullable=False)
    new_start_at = Column(UTCDateTime, nullable=False)
    new_end_at = Column(UTCDateTime, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(
        create_safe_enum(RescheduleStatus, "reschedule_status"),
        nullable=False,
        default=RescheduleStatus.PENDING,
    )
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    responded_at = Column(UTCDateTime, nullable=True)

    lesson = relationship("Lesson", back_populates="reschedule_requests")

    __table_args__ = (
        CheckConstraint("new_start_at < new_end_at", name="ck_reschedule_requests_time_order"),
        Index(
            "uq_reschedule_requests_pending_per_lesson",
            "lesson_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<RescheduleRequest {self.id}: lesson={self.lesson_id} {self.status}>"
