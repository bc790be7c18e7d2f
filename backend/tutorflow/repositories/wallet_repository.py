# backend/tutorflow/repositories/wallet_repository.py
"""Wallet and ledger data access."""

from decimal import Decimal
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import TransactionDirection, TransactionStatus
from ..core.exceptions import RepositoryException
from ..models.wallet import Transaction, Wallet
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class WalletRepository(BaseRepository[Wallet]):
    def __init__(self, db: Session):
        super().__init__(db, Wallet)

    def get_by_user_id(self, user_id: str) -> Optional[Wallet]:
        return self.find_one_by(user_id=user_id)

    def get_or_create(self, user_id: str, currency: str, is_system: bool = False) -> Wallet:
        """Return the user's wallet, creating it if another transaction has not already."""
        wallet = self.get_by_user_id(user_id)
        if wallet is not None:
            return wallet
        try:
            with self.db.begin_nested():
                wallet = Wallet(user_id=user_id, currency=currency, is_system=is_system)
                self.db.add(wallet)
            return wallet
        except IntegrityError:
            logger.debug("Wallet for user %s created concurrently", user_id)
        existing = self.get_by_user_id(user_id)
        if existing is None:
            raise RepositoryException(f"Wallet for user {user_id} could not be created")
        return existing

    def lock_wallets(self, wallet_ids: Iterable[str]) -> Dict[str, Wallet]:
        """
        Lock several wallets FOR UPDATE in ascending id order.

        A fixed order means two transfers between the same pair of wallets
        cannot deadlock.
        """
        locked: Dict[str, Wallet] = {}
        for wallet_id in sorted(set(wallet_ids)):
            wallet = self.get_for_update(wallet_id)
            if wallet is None:
                raise RepositoryException(f"Wallet {wallet_id} not found")
            locked[wallet_id] = wallet
        return locked

    def add_transaction(self, transaction: Transaction) -> Transaction:
        try:
            self.db.add(transaction)
            self.db.flush()
            return transaction
        except SQLAlchemyError as e:
            self.logger.error("Failed to append ledger row for wallet %s: %s", transaction.wallet_id, e)
            raise RepositoryException(f"Failed to record transaction: {e}") from e

    def ledger_balance(self, wallet_id: str) -> Decimal:
        """Sum of succeeded credits minus succeeded debits."""
        signed = case(
            (Transaction.direction == TransactionDirection.CREDIT, Transaction.amount),
            else_=-Transaction.amount,
        )
        query = self.db.query(func.coalesce(func.sum(signed), 0)).filter(
            Transaction.wallet_id == wallet_id,
            Transaction.status == TransactionStatus.SUCCEEDED,
        )
        return Decimal(str(self._execute_scalar(query))).quantize(Decimal("0.01"))

    def list_transactions(
        self,
        wallet_id: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> List[Transaction]:
        query = self.db.query(Transaction).filter(Transaction.wallet_id == wallet_id)
        if reference_type is not None:
            query = query.filter(Transaction.reference_type == reference_type)
        if reference_id is not None:
            query = query.filter(Transaction.reference_id == reference_id)
        try:
            return query.order_by(Transaction.created_at.asc(), Transaction.id.asc()).all()
        except SQLAlchemyError as e:
            self.logger.error("Failed to list transactions for wallet %s: %s", wallet_id, e)
            raise RepositoryException(f"Failed to list transactions: {e}") from e
