# backend/tutorflow/models/wallet.py
"""
Wallet and ledger transaction models.

A wallet's balance is a cached projection of its transaction history:
balance == sum(credits) - sum(debits) at every committed instant. Rows in
``wallet_transactions`` are append-only.
"""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from tutorflow.core.enums import TransactionDirection, TransactionStatus, TransactionType
from tutorflow.core.ulid_helper import generate_ulid

from ..database import Base
from .base_enum import create_safe_enum
from .types import MONEY, UTCDateTime, utc_now


class Wallet(Base):
    """Per-user balance. Mutated only through WalletService under a row lock."""

    __tablename__ = "wallets"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    balance = Column(MONEY, nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="VND")
    is_frozen = Column(Boolean, nullable=False, default=False)
    is_system = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    transactions = relationship(
        "Transaction",
        back_populates="wallet",
        foreign_keys="Transaction.wallet_id",
        order_by="Transaction.created_at",
        lazy="dynamic",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),)

    def __repr__(self) -> str:
        return f"<Wallet {self.id}: user={self.user_id} balance={self.balance} frozen={self.is_frozen}>"


class Transaction(Base):
    """Immutable ledger row; ``amount`` is always positive, ``direction`` carries the sign."""

    __tablename__ = "wallet_transactions"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    wallet_id = Column(String(26), ForeignKey("wallets.id"), nullable=False, index=True)
    type = Column(create_safe_enum(TransactionType, "transaction_type"), nullable=False)
    direction = Column(
        create_safe_enum(TransactionDirection, "transaction_direction"), nullable=False
    )
    amount = Column(MONEY, nullable=False)
    status = Column(
        create_safe_enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.SUCCEEDED,
    )
    balance_after = Column(MONEY, nullable=False)
    counterparty_wallet_id = Column(String(26), ForeignKey("wallets.id"), nullable=True)
    reference_type = Column(String(40), nullable=True)
    reference_id = Column(String(64), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    wallet = relationship("Wallet", back_populates="transactions", foreign_keys=[wallet_id])

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
        Index("ix_wallet_transactions_reference", "reference_type", "reference_id"),
    )

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == TransactionDirection.DEBIT:
            return -Decimal(self.amount)
        return Decimal(self.amount)

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.id}: wallet={self.wallet_id} {self.direction} "
            f"{self.amount} type={self.type}>"
        )
