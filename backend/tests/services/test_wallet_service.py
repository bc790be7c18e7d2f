"""
WalletService ledger behavior: every balance change has a matching
transaction row, and money is never created or destroyed by transfers.
"""

from decimal import Decimal

import pytest

from tutorflow.core.enums import TransactionDirection, TransactionType
from tutorflow.core.exceptions import (
    InsufficientBalanceException,
    ValidationException,
    WalletFrozenException,
)
from tutorflow.models.wallet import Transaction
from tutorflow.services.wallet_service import LedgerReference, WalletService


def test_deposit_creates_wallet_and_ledger_row(db):
    service = WalletService(db)

    tx = service.deposit("user-a", Decimal("150.50"), reference=LedgerReference("gateway_payment", "p-1"))

    wallet = service.get_user_wallet("user-a")
    assert wallet.balance == Decimal("150.50")
    assert tx.type == TransactionType.DEPOSIT
    assert tx.direction == TransactionDirection.CREDIT
    assert tx.balance_after == Decimal("150.50")
    assert tx.reference_type == "gateway_payment"
    assert service.verify_balance(wallet.id)


def test_withdraw_more_than_balance_leaves_wallet_untouched(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("20"))
    wallet = service.get_user_wallet("user-a")

    with pytest.raises(InsufficientBalanceException):
        service.withdraw("user-a", Decimal("20.01"))

    db.expire_all()
    assert service.get_wallet(wallet.id).balance == Decimal("20.00")
    assert db.query(Transaction).filter(Transaction.wallet_id == wallet.id).count() == 1


@pytest.mark.parametrize("amount", ["0", "-5", "0.001"])
def test_non_positive_amounts_are_rejected(db, amount):
    with pytest.raises(ValidationException):
        WalletService(db).deposit("user-a", Decimal(amount))


def test_transfer_moves_funds_and_preserves_total(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("100"))
    service.deposit("user-b", Decimal("5"))
    source = service.get_user_wallet("user-a")
    target = service.get_user_wallet("user-b")

    debit_tx, credit_tx = service.transfer(
        source.id, target.id, Decimal("40"), TransactionType.PAYOUT_OUT, TransactionType.PAYOUT_IN
    )

    assert service.get_wallet(source.id).balance == Decimal("60.00")
    assert service.get_wallet(target.id).balance == Decimal("45.00")
    assert debit_tx.counterparty_wallet_id == target.id
    assert credit_tx.counterparty_wallet_id == source.id
    assert service.verify_balance(source.id) and service.verify_balance(target.id)


def test_transfer_to_self_is_rejected(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("10"))
    wallet = service.get_user_wallet("user-a")

    with pytest.raises(ValidationException):
        service.transfer(wallet.id, wallet.id, Decimal("1"), TransactionType.PAYOUT_OUT, TransactionType.PAYOUT_IN)


def test_frozen_wallet_cannot_send_or_receive(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("50"))
    service.deposit("user-b", Decimal("50"))
    frozen = service.get_user_wallet("user-a")
    other = service.get_user_wallet("user-b")
    service.freeze(frozen.id)

    with pytest.raises(WalletFrozenException):
        service.transfer(frozen.id, other.id, Decimal("1"), TransactionType.PAYOUT_OUT, TransactionType.PAYOUT_IN)
    with pytest.raises(WalletFrozenException):
        service.transfer(other.id, frozen.id, Decimal("1"), TransactionType.PAYOUT_OUT, TransactionType.PAYOUT_IN)

    db.expire_all()
    assert service.get_wallet(other.id).balance == Decimal("50.00")

    service.unfreeze(frozen.id)
    service.transfer(frozen.id, other.id, Decimal("1"), TransactionType.PAYOUT_OUT, TransactionType.PAYOUT_IN)
    assert service.get_wallet(other.id).balance == Decimal("51.00")


def test_system_wallets_are_distinct_and_flagged(db):
    service = WalletService(db)

    escrow = service.escrow_wallet()
    platform = service.platform_wallet()

    assert escrow.id != platform.id
    assert escrow.is_system and platform.is_system
    assert service.escrow_wallet().id == escrow.id


def test_list_transactions_filters_by_reference(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("10"), reference=LedgerReference("gateway_payment", "p-1"))
    service.deposit("user-a", Decimal("15"), reference=LedgerReference("gateway_payment", "p-2"))
    wallet = service.get_user_wallet("user-a")

    matching = service.list_transactions(wallet.id, LedgerReference("gateway_payment", "p-2"))

    assert [tx.amount for tx in matching] == [Decimal("15.00")]
    assert service.ledger_balance(wallet.id) == Decimal("25.00")


def test_signed_history_matches_balance(db):
    service = WalletService(db)
    service.deposit("user-a", Decimal("40"))
    service.withdraw("user-a", Decimal("12.50"))
    wallet = service.get_user_wallet("user-a")

    history = service.list_transactions(wallet.id)

    assert sorted(tx.signed_amount for tx in history) == [Decimal("-12.50"), Decimal("40.00")]
    assert sum(tx.signed_amount for tx in history) == Decimal(wallet.balance)
