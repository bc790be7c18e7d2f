# backend/tutorflow/models/escrow.py
"""
Escrow, tutor deposit and commission configuration models.

An escrow holds one student's payment for one class between payment and
completion. Status moves HELD -> RELEASED or HELD -> REFUNDED and is final
after that. A tutor deposit follows the same one-way rule.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship

from tutorflow.core.enums import CancellationReason, DeliveryMode, EscrowStatus, TutorDepositStatus
from tutorflow.core.exceptions import StateTransitionException
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import MONEY, RATE, UTCDateTime, utc_now


class CommissionConfig(Base):
    """Platform commission rates by delivery mode; exactly one row is active."""

    __tablename__ = "commission_configs"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    one_to_one_online = Column(RATE, nullable=False)
    one_to_one_offline = Column(RATE, nullable=False)
    group_online = Column(RATE, nullable=False)
    group_offline = Column(RATE, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index(
            "uq_commission_configs_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def rate_for(self, mode: DeliveryMode) -> Decimal:
        return Decimal(getattr(self, DeliveryMode(mode).value))


class Escrow(Base):
    __tablename__ = "escrows"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_id = Column(String(26), ForeignKey("classes.id"), nullable=False, index=True)
    class_assign_id = Column(
        String(26), ForeignKey("class_assigns.id"), nullable=False, index=True
    )
    payer_user_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=False)
    tutor_id = Column(String(64), nullable=False, index=True)
    gross_amount = Column(MONEY, nullable=False)
    commission_rate_snapshot = Column(RATE, nullable=False)
    commission_amount = Column(MONEY, nullable=False)
    status = Column(
        create_safe_enum(EscrowStatus, "escrow_status"),
        nullable=False,
        default=EscrowStatus.HELD,
        index=True,
    )
    released_amount = Column(MONEY, nullable=False, default=Decimal("0.00"))
    refunded_amount = Column(MONEY, nullable=False, default=Decimal("0.00"))
    released_at = Column(UTCDateTime, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    class_assign = relationship("ClassAssign", back_populates="escrows")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("gross_amount > 0", name="ck_escrows_gross_positive"),
        CheckConstraint(
            "released_amount + refunded_amount <= gross_amount", name="ck_escrows_settled_bounds"
        ),
        Index(
            "uq_escrows_single_held_per_assign",
            "class_assign_id",
            unique=True,
            postgresql_where=text("status = 'held'"),
            sqlite_where=text("status = 'held'"),
        ),
    )

    @property
    def net_amount(self) -> Decimal:
        return Decimal(self.gross_amount) - Decimal(self.commission_amount)

    def _settle(self, new_status: EscrowStatus) -> None:
        current = EscrowStatus(self.status)
        if current.is_terminal:
            raise StateTransitionException("Escrow", self.id, current.value, new_status.value)
        self.status = new_status

    def mark_released(self, released_amount: Decimal, at: datetime) -> None:
        self._settle(EscrowStatus.RELEASED)
        self.released_amount = released_amount
        self.released_at = at

    def mark_refunded(self, refunded_amount: Decimal, released_amount: Decimal, at: datetime) -> None:
        self._settle(EscrowStatus.REFUNDED)
        self.refunded_amount = refunded_amount
        self.released_amount = released_amount
        self.refunded_at = at

    def __repr__(self) -> str:
        return f"<Escrow {self.id}: class={self.class_id} {self.gross_amount} {self.status}>"


class TutorDeposit(Base):
    """
    A tutor's good-faith deposit on an online class.

    Held in the escrow wallet alongside the students' payments. Returned to
    the tutor when the class completes or is cancelled for a reason that is
    not the tutor's fault; forfeited otherwise.
    """

    __tablename__ = "tutor_deposits"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    class_id = Column(String(26), ForeignKey("classes.id"), nullable=False, index=True)
    tutor_id = Column(String(64), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    rate_snapshot = Column(RATE, nullable=False)
    status = Column(
        create_safe_enum(TutorDepositStatus, "tutor_deposit_status"),
        nullable=False,
        default=TutorDepositStatus.HELD,
        index=True,
    )
    forfeit_reason = Column(create_safe_enum(CancellationReason, "deposit_forfeit_reason"), nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    forfeited_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_tutor_deposits_amount_positive"),
        Index(
            "uq_tutor_deposits_single_held_per_class",
            "class_id",
            unique=True,
            postgresql_where=text("status = 'held'"),
            sqlite_where=text("status = 'held'"),
        ),
    )

    def _settle(self, new_status: TutorDepositStatus) -> None:
        current = TutorDepositStatus(self.status)
        if current.is_terminal:
            raise StateTransitionException("TutorDeposit", self.id, current.value, new_status.value)
        self.status = new_status

    def mark_refunded(self, at: datetime) -> None:
        self._settle(TutorDepositStatus.REFUNDED)
        self.refunded_at = at

    def mark_forfeited(self, reason: CancellationReason, at: datetime) -> None:
        self._settle(TutorDepositStatus.FORFEITED)
        self.forfeit_reason = reason
        self.forfeited_at = at

    def __repr__(self) -> str:
        return f"<TutorDeposit {self.id}: class={self.class_id} {self.amount} {self.status}>"
