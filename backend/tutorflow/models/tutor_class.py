# backend/tutorflow/models/tutor_class.py
"""
Class and enrollment models.

A class is owned by a tutor, either created directly or spawned when a
student accepts a tutor's application to a class request. Students join
through ClassAssign rows; only Approved enrollments that are Paid (or whose
payment was waived) count toward ``current_student_count``.
"""

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy import (
    Boolean,
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

from tutorflow.core.enums import (
    ApprovalStatus,
    CancellationReason,
    ClassMode,
    ClassStatus,
    DeliveryMode,
    PaymentStatus,
)
from tutorflow.core.exceptions import StateTransitionException
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import MONEY, UTCDateTime, utc_now

logger = logging.getLogger(__name__)

_CLASS_TRANSITIONS = {
    ClassStatus.PENDING: {ClassStatus.ACTIVE, ClassStatus.CANCELLED},
    ClassStatus.ACTIVE: {ClassStatus.ONGOING, ClassStatus.COMPLETED, ClassStatus.CANCELLED},
    ClassStatus.ONGOING: {ClassStatus.COMPLETED, ClassStatus.CANCELLED},
    ClassStatus.COMPLETED: set(),
    ClassStatus.CANCELLED: set(),
}


class TutorClass(Base):
    """A class taught by one tutor over a generated series of lessons."""

    __tablename__ = "classes"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    tutor_id = Column(String(64), nullable=False, index=True)
    class_request_id = Column(
        String(26), ForeignKey("class_requests.id"), nullable=True, unique=True
    )
    title = Column(String(200), nullable=False)
    subject = Column(String(120), nullable=True)
    description = Column(Text, nullable=True)
    mode = Column(create_safe_enum(ClassMode, "class_mode"), nullable=False)
    price = Column(MONEY, nullable=False)
    student_limit = Column(Integer, nullable=False, default=1)
    current_student_count = Column(Integer, nullable=False, default=0)
    start_date = Column(Date, nullable=False)
    status = Column(
        create_safe_enum(ClassStatus, "class_status"),
        nullable=False,
        default=ClassStatus.PENDING,
        index=True,
    )

    cancellation_reason = Column(
        create_safe_enum(CancellationReason, "cancellation_reason"), nullable=True
    )
    cancelled_by = Column(String(64), nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    rules = relationship(
        "RecurringScheduleRule",
        order_by="RecurringScheduleRule.position",
        cascade="all, delete-orphan",
    )
    lessons = relationship(
        "Lesson",
        back_populates="tutor_class",
        order_by="Lesson.sequence",
        cascade="all, delete-orphan",
    )
    assigns = relationship("ClassAssign", back_populates="tutor_class", cascade="all, delete-orphan")
    class_request = relationship("ClassRequest", back_populates="spawned_class")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_classes_price_non_negative"),
        CheckConstraint("student_limit >= 1", name="ck_classes_student_limit_positive"),
        CheckConstraint(
            "current_student_count >= 0 AND current_student_count <= student_limit",
            name="ck_classes_student_count_bounds",
        ),
    )

    @property
    def delivery_mode(self) -> DeliveryMode:
        one_to_one = self.student_limit == 1
        online = self.mode == ClassMode.ONLINE
        if one_to_one:
            return DeliveryMode.ONE_TO_ONE_ONLINE if online else DeliveryMode.ONE_TO_ONE_OFFLINE
        return DeliveryMode.GROUP_ONLINE if online else DeliveryMode.GROUP_OFFLINE

    @property
    def is_terminal(self) -> bool:
        return ClassStatus(self.status).is_terminal

    def transition_to(self, new_status: ClassStatus) -> None:
        """Move to ``new_status`` or raise if the lifecycle does not allow it."""
        current = ClassStatus(self.status)
        if new_status not in _CLASS_TRANSITIONS[current]:
            raise StateTransitionException("Class", self.id, current.value, new_status.value)
        self.status = new_status

    def cancel(
        self,
        reason: CancellationReason,
        cancelled_by: Optional[str],
        at: datetime,
    ) -> None:
        self.transition_to(ClassStatus.CANCELLED)
        self.cancellation_reason = reason
        self.cancelled_by = cancelled_by
        self.cancelled_at = at
        logger.info("Class %s cancelled (%s) by %s", self.id, reason.value, cancelled_by)

    def complete(self, at: datetime) -> None:
        self.transition_to(ClassStatus.COMPLETED)
        self.completed_at = at
        logger.info("Class %s completed", self.id)

    def __repr__(self) -> str:
        return f"<TutorClass {self.id}: tutor={self.tutor_id} status={self.status}>"


class ClassAssign(Base):
    """A student's enrollment in a class."""

    __tablename__ = "class_assigns"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_id = Column(String(26), ForeignKey("classes.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(String(64), nullable=False, index=True)
    approval_status = Column(
        create_safe_enum(ApprovalStatus, "approval_status"),
        nullable=False,
        default=ApprovalStatus.PENDING,
    )
    payment_status = Column(
        create_safe_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.UNPAID,
    )
    payment_waived = Column(Boolean, nullable=False, default=False)
    enrolled_at = Column(UTCDateTime, nullable=False, default=utc_now)
    approved_at = Column(UTCDateTime, nullable=True)
    withdrawn_at = Column(UTCDateTime, nullable=True)
    withdrawal_reason = Column(Text, nullable=True)

    tutor_class = relationship("TutorClass", back_populates="assigns")
    escrows = relationship("Escrow", back_populates="class_assign")

    __table_args__ = (
        UniqueConstraint("class_id", "student_id", name="uq_class_assigns_class_student"),
    )

    @property
    def counts_toward_roster(self) -> bool:
        """Approved and either paid or waived."""
        if self.approval_status != ApprovalStatus.APPROVED:
            return False
        return self.payment_status == PaymentStatus.PAID or bool(self.payment_waived)

    def __repr__(self) -> str:
        return (
            f"<ClassAssign {self.id}: class={self.class_id} student={self.student_id} "
            f"{self.approval_status}/{self.payment_status}>"
        )
