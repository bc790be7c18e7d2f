# backend/tutorflow/models/class_request.py
"""
Class request and tutor application models.

A student posts a request (open to any tutor, or directed at one). Tutors
apply; the student accepts one application, which spawns the class.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from tutorflow.core.enums import ApplicationStatus, ClassMode, ClassRequestStatus
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import MONEY, UTCDateTime, utc_now


class ClassRequest(Base):
    __tablename__ = "class_requests"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    student_id = Column(String(64), nullable=False, index=True)
    # Set for a request directed at a single tutor
    tutor_id = Column(String(64), nullable=True, index=True)
    subject = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    mode = Column(create_safe_enum(ClassMode, "class_mode"), nullable=False)
    budget = Column(MONEY, nullable=False)
    student_limit = Column(Integer, nullable=False, default=1)
    class_start_date = Column(Date, nullable=False)
    status = Column(
        create_safe_enum(ClassRequestStatus, "class_request_status"),
        nullable=False,
        default=ClassRequestStatus.PENDING,
        index=True,
    )
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    rules = relationship(
        "RecurringScheduleRule",
        order_by="RecurringScheduleRule.position",
        cascade="all, delete-orphan",
    )
    applications = relationship(
        "TutorApplication", back_populates="class_request", order_by="TutorApplication.applied_at"
    )
    spawned_class = relationship("TutorClass", back_populates="class_request", uselist=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (CheckConstraint("budget > 0", name="ck_class_requests_budget_positive"),)

    @property
    def is_directed(self) -> bool:
        return self.tutor_id is not None

    def __repr__(self) -> str:
        return f"<ClassRequest {self.id}: student={self.student_id} status={self.status}>"


class TutorApplication(Base):
    __tablename__ = "tutor_applications"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_request_id = Column(
        String(26), ForeignKey("class_requests.id", ondelete="CASCADE"), nullable=False
    )
    tutor_id = Column(String(64), nullable=False, index=True)
    message = Column(Text, nullable=True)
    status = Column(
        create_safe_enum(ApplicationStatus, "application_status"),
        nullable=False,
        default=ApplicationStatus.PENDING,
    )
    applied_at = Column(UTCDateTime, nullable=False, default=utc_now)
    responded_at = Column(UTCDateTime, nullable=True)

    class_request = relationship("ClassRequest", back_populates="applications")

    __table_args__ = (
        UniqueConstraint("class_request_id", "tutor_id", name="uq_tutor_applications_request_tutor"),
    )

    def __repr__(self) -> str:
        return f"<TutorApplication {self.id}: tutor={self.tutor_id} status={self.status}>"
