# backend/tutorflow/models/payment.py
"""Gateway payment records used to make inbound confirmations idempotent."""

from sqlalchemy import CheckConstraint, Column, Integer, String, Text

from tutorflow.core.enums import GatewayPaymentStatus, PaymentContextType
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import MONEY, UTCDateTime, utc_now


class GatewayPayment(Base):
    """
    One external charge. ``context_id`` is what the gateway echoes back in its
    confirmation: the enrollment id for a class escrow, the row's own id for
    a wallet top-up.
    """

    __tablename__ = "gateway_payments"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    user_id = Column(String(64), nullable=False, index=True)
    context_type = Column(
        create_safe_enum(PaymentContextType, "payment_context_type"), nullable=False
    )
    context_id = Column(String(64), nullable=False, unique=True)
    amount = Column(MONEY, nullable=False)
    status = Column(
        create_safe_enum(GatewayPaymentStatus, "gateway_payment_status"),
        nullable=False,
        default=GatewayPaymentStatus.PENDING,
        index=True,
    )
    gateway_payment_id = Column(String(128), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    confirmed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (CheckConstraint("amount > 0", name="ck_gateway_payments_amount_positive"),)
