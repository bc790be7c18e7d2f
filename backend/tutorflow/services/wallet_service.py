# backend/tutorflow/services/wallet_service.py
"""
Wallet ledger primitives.

Every balance change locks the wallet row, appends one immutable
Transaction and updates the cached balance in the same unit of work, so
``balance == sum(credits) - sum(debits)`` holds at every committed instant.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Iterable, Optional, Tuple, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import TransactionDirection, TransactionStatus, TransactionType
from ..core.exceptions import (
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
    WalletFrozenException,
)
from ..models.wallet import Transaction, Wallet
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import quantize_money

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, str]


@dataclass(frozen=True)
class LedgerReference:
    """What a ledger row is about, e.g. ``("escrow", escrow_id)``."""

    type: str
    id: str


class WalletService(BaseService):
    """Balance mutations for user and system wallets."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.wallet_repository = RepositoryFactory.create_wallet_repository(db)

    # ------------------------------------------------------------------ lookup
    def get_or_create_wallet(self, user_id: str, *, is_system: bool = False) -> Wallet:
        """Does not commit; the caller's unit of work owns the new row."""
        return self.wallet_repository.get_or_create(
            user_id, settings.wallet_currency, is_system=is_system
        )

    def get_wallet(self, wallet_id: str) -> Wallet:
        wallet = self.wallet_repository.get_by_id(wallet_id)
        if wallet is None:
            raise NotFoundException(f"Wallet {wallet_id} not found")
        return wallet

    def get_user_wallet(self, user_id: str) -> Optional[Wallet]:
        return self.wallet_repository.get_by_user_id(user_id)

    def escrow_wallet(self) -> Wallet:
        return self.get_or_create_wallet(settings.escrow_wallet_user_id, is_system=True)

    def platform_wallet(self) -> Wallet:
        return self.get_or_create_wallet(settings.platform_wallet_user_id, is_system=True)

    def lock(self, wallet_ids: Iterable[str]) -> dict[str, Wallet]:
        """Lock wallets in ascending id order for the rest of the transaction."""
        return self.wallet_repository.lock_wallets(wallet_ids)

    def ledger_balance(self, wallet_id: str) -> Decimal:
        return self.wallet_repository.ledger_balance(wallet_id)

    def verify_balance(self, wallet_id: str) -> bool:
        """True when the cached balance equals the transaction history."""
        wallet = self.get_wallet(wallet_id)
        return quantize_money(wallet.balance) == self.ledger_balance(wallet_id)

    def list_transactions(self, wallet_id: str, reference: Optional[LedgerReference] = None):
        return self.wallet_repository.list_transactions(
            wallet_id,
            reference_type=reference.type if reference else None,
            reference_id=reference.id if reference else None,
        )

    # ------------------------------------------------------------- primitives
    @BaseService.measure_operation("wallet.credit")
    def credit(
        self,
        wallet_id: str,
        amount: Amount,
        tx_type: TransactionType,
        *,
        reference: Optional[LedgerReference] = None,
        counterparty_wallet_id: Optional[str] = None,
        note: Optional[str] = None,
        use_transaction: bool = True,
    ) -> Transaction:
        def _credit() -> Transaction:
            wallet = self.lock([wallet_id])[wallet_id]
            return self._apply(
                wallet, TransactionDirection.CREDIT, amount, tx_type, reference, counterparty_wallet_id, note
            )

        if use_transaction:
            with self.transaction():
                return _credit()
        return _credit()

    @BaseService.measure_operation("wallet.debit")
    def debit(
        self,
        wallet_id: str,
        amount: Amount,
        tx_type: TransactionType,
        *,
        reference: Optional[LedgerReference] = None,
        counterparty_wallet_id: Optional[str] = None,
        note: Optional[str] = None,
        use_transaction: bool = True,
    ) -> Transaction:
        def _debit() -> Transaction:
            wallet = self.lock([wallet_id])[wallet_id]
            return self._apply(
                wallet, TransactionDirection.DEBIT, amount, tx_type, reference, counterparty_wallet_id, note
            )

        if use_transaction:
            with self.transaction():
                return _debit()
        return _debit()

    @BaseService.measure_operation("wallet.transfer")
    def transfer(
        self,
        from_wallet_id: str,
        to_wallet_id: str,
        amount: Amount,
        out_type: TransactionType,
        in_type: TransactionType,
        *,
        reference: Optional[LedgerReference] = None,
        note: Optional[str] = None,
        use_transaction: bool = True,
    ) -> Tuple[Transaction, Transaction]:
        """Paired debit and credit; both wallets are locked before either changes."""
        if from_wallet_id == to_wallet_id:
            raise ValidationException("Cannot transfer a wallet's funds to itself")

        def _transfer() -> Tuple[Transaction, Transaction]:
            wallets = self.lock([from_wallet_id, to_wallet_id])
            source, target = wallets[from_wallet_id], wallets[to_wallet_id]
            # Check both sides before writing either.
            self._ensure_usable(target)
            debit_tx = self._apply(
                source, TransactionDirection.DEBIT, amount, out_type, reference, target.id, note
            )
            credit_tx = self._apply(
                target, TransactionDirection.CREDIT, amount, in_type, reference, source.id, note
            )
            return debit_tx, credit_tx

        if use_transaction:
            with self.transaction():
                return _transfer()
        return _transfer()

    # ---------------------------------------------------------- user actions
    @BaseService.measure_operation("wallet.deposit")
    def deposit(
        self,
        user_id: str,
        amount: Amount,
        *,
        reference: Optional[LedgerReference] = None,
        use_transaction: bool = True,
    ) -> Transaction:
        """Credit money confirmed by the payment gateway."""

        def _deposit() -> Transaction:
            wallet = self.get_or_create_wallet(user_id)
            return self.credit(
                wallet.id,
                amount,
                TransactionType.DEPOSIT,
                reference=reference,
                note="Gateway deposit",
                use_transaction=False,
            )

        if use_transaction:
            with self.transaction():
                return _deposit()
        return _deposit()

    @BaseService.measure_operation("wallet.withdraw")
    def withdraw(
        self,
        user_id: str,
        amount: Amount,
        *,
        reference: Optional[LedgerReference] = None,
        use_transaction: bool = True,
    ) -> Transaction:
        def _withdraw() -> Transaction:
            wallet = self.get_user_wallet(user_id)
            if wallet is None:
                raise NotFoundException(f"User {user_id} has no wallet")
            return self.debit(
                wallet.id,
                amount,
                TransactionType.WITHDRAWAL,
                reference=reference,
                use_transaction=False,
            )

        if use_transaction:
            with self.transaction():
                return _withdraw()
        return _withdraw()

    @BaseService.measure_operation("wallet.freeze")
    def freeze(self, wallet_id: str, *, use_transaction: bool = True) -> Wallet:
        return self._set_frozen(wallet_id, True, use_transaction)

    @BaseService.measure_operation("wallet.unfreeze")
    def unfreeze(self, wallet_id: str, *, use_transaction: bool = True) -> Wallet:
        return self._set_frozen(wallet_id, False, use_transaction)

    # --------------------------------------------------------------- helpers
    def _set_frozen(self, wallet_id: str, frozen: bool, use_transaction: bool) -> Wallet:
        def _update() -> Wallet:
            wallet = self.lock([wallet_id])[wallet_id]
            wallet.is_frozen = frozen
            self.wallet_repository.flush()
            logger.info("Wallet %s %s", wallet_id, "frozen" if frozen else "unfrozen")
            return wallet

        if use_transaction:
            with self.transaction():
                return _update()
        return _update()

    @staticmethod
    def _ensure_usable(wallet: Wallet) -> None:
        if wallet.is_frozen:
            raise WalletFrozenException(wallet.id)

    def _apply(
        self,
        wallet: Wallet,
        direction: TransactionDirection,
        amount: Amount,
        tx_type: TransactionType,
        reference: Optional[LedgerReference],
        counterparty_wallet_id: Optional[str],
        note: Optional[str],
    ) -> Transaction:
        """Mutate a locked wallet and append its ledger row."""
        value = quantize_money(amount)
        if value <= 0:
            raise ValidationException("Amount must be positive", details={"amount": str(value)})
        self._ensure_usable(wallet)

        balance = quantize_money(wallet.balance or 0)
        if direction == TransactionDirection.DEBIT:
            if balance < value:
                raise InsufficientBalanceException(wallet.id, balance, value)
            new_balance = balance - value
        else:
            new_balance = balance + value

        wallet.balance = new_balance
        transaction = Transaction(
            wallet_id=wallet.id,
            type=tx_type,
            direction=direction,
            amount=value,
            status=TransactionStatus.SUCCEEDED,
            balance_after=new_balance,
            counterparty_wallet_id=counterparty_wallet_id,
            reference_type=reference.type if reference else None,
            reference_id=reference.id if reference else None,
            note=note,
            created_at=self.now(),
        )
        self.wallet_repository.add_transaction(transaction)
        logger.info(
            "Ledger %s %s on wallet %s",
            direction.value,
            value,
            wallet.id,
            extra={
                "wallet_id": wallet.id,
                "tx_type": TransactionType(tx_type).value,
                "amount": str(value),
                "balance_after": str(new_balance),
                "reference_type": reference.type if reference else None,
                "reference_id": reference.id if reference else None,
            },
        )
        return transaction
