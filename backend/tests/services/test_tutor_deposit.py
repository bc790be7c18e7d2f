"""
Tutor deposits: held in escrow against an online class, returned on
completion or a no-fault cancellation, forfeited when the tutor is at fault.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tutorflow.core.config import settings
from tutorflow.core.enums import (
    CancellationReason,
    ClassMode,
    ClassStatus,
    TransactionType,
    TutorDepositStatus,
)
from tutorflow.core.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    InsufficientBalanceException,
    StateTransitionException,
)
from tutorflow.models.escrow import TutorDeposit
from tutorflow.models.wallet import Transaction
from tutorflow.services.class_service import ClassService
from tutorflow.services.class_status_service import ClassStatusService
from tutorflow.services.escrow_service import EscrowService, split_evenly

from tests.utils.builders import (
    OTHER_STUDENT_ID,
    STUDENT_ID,
    TUTOR_ID,
    balance_of,
    complete_lessons,
    enroll_and_pay,
    fund,
    make_class,
)

FIRST_LESSON_START = datetime(2030, 1, 14, 11, 0, tzinfo=timezone.utc)


def _class_with_deposit(db, *, student_limit=1, students=(STUDENT_ID,)):
    created = make_class(db, student_limit=student_limit)
    class_id = created.tutor_class.id
    for student_id in students:
        enroll_and_pay(db, class_id, student_id)
    fund(db, TUTOR_ID, "80")
    deposit = EscrowService(db).hold_tutor_deposit(class_id, TUTOR_ID)
    return class_id, deposit


def test_hold_moves_a_share_of_the_price_into_escrow(db):
    class_id, deposit = _class_with_deposit(db)

    assert deposit.amount == Decimal("80.00")
    assert deposit.rate_snapshot == Decimal("0.10")
    assert deposit.status == TutorDepositStatus.HELD
    assert balance_of(db, TUTOR_ID) == Decimal("0.00")
    wallets = EscrowService(db).wallet_service
    assert Decimal(wallets.escrow_wallet().balance) == Decimal("880.00")
    assert EscrowService(db).get_held_deposit(class_id).id == deposit.id
    legs = db.query(Transaction).filter_by(reference_type="tutor_deposit", reference_id=deposit.id).all()
    assert sorted(leg.type.value for leg in legs) == sorted(
        [TransactionType.TUTOR_DEPOSIT_OUT.value, TransactionType.TUTOR_DEPOSIT_IN.value]
    )


def test_second_deposit_for_a_class_is_refused(db):
    class_id, _ = _class_with_deposit(db)
    fund(db, TUTOR_ID, "80")

    with pytest.raises(BusinessRuleException) as exc_info:
        EscrowService(db).hold_tutor_deposit(class_id, TUTOR_ID)

    assert exc_info.value.code == "DEPOSIT_ALREADY_HELD"
    assert balance_of(db, TUTOR_ID) == Decimal("80.00")


def test_deposit_needs_a_held_student_payment(db):
    created = make_class(db)
    fund(db, TUTOR_ID, "80")

    with pytest.raises(BusinessRuleException) as exc_info:
        EscrowService(db).hold_tutor_deposit(created.tutor_class.id, TUTOR_ID)

    assert exc_info.value.code == "NO_HELD_ESCROW"


def test_offline_class_takes_no_deposit(db):
    created = make_class(db, mode=ClassMode.OFFLINE)
    enroll_and_pay(db, created.tutor_class.id)

    with pytest.raises(BusinessRuleException) as exc_info:
        EscrowService(db).hold_tutor_deposit(created.tutor_class.id, TUTOR_ID)

    assert exc_info.value.code == "DEPOSIT_NOT_APPLICABLE"


def test_only_the_class_tutor_places_the_deposit(db):
    created = make_class(db)
    enroll_and_pay(db, created.tutor_class.id)

    with pytest.raises(ForbiddenException):
        EscrowService(db).hold_tutor_deposit(created.tutor_class.id, STUDENT_ID)


def test_tutor_without_funds_holds_nothing(db):
    created = make_class(db)
    enroll_and_pay(db, created.tutor_class.id)
    fund(db, TUTOR_ID, "10")

    with pytest.raises(InsufficientBalanceException):
        EscrowService(db).hold_tutor_deposit(created.tutor_class.id, TUTOR_ID)

    db.expire_all()
    assert db.query(TutorDeposit).count() == 0
    assert balance_of(db, TUTOR_ID) == Decimal("10.00")


def test_completion_returns_the_deposit(db):
    class_id, deposit = _class_with_deposit(db)
    complete_lessons(db, class_id)

    ClassService(db).complete_class(class_id)

    db.refresh(deposit)
    assert deposit.status == TutorDepositStatus.REFUNDED
    assert deposit.refunded_at is not None
    assert balance_of(db, TUTOR_ID) == Decimal("784.00")
    assert Decimal(EscrowService(db).wallet_service.escrow_wallet().balance) == Decimal("0.00")


def test_tutor_fault_forfeits_the_deposit_to_paying_students(db):
    class_id, deposit = _class_with_deposit(db, student_limit=2, students=(STUDENT_ID, OTHER_STUDENT_ID))

    result = ClassService(db).cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    assert result.deposit_status == TutorDepositStatus.FORFEITED
    assert result.deposit_amount == Decimal("80.00")
    db.refresh(deposit)
    assert deposit.status == TutorDepositStatus.FORFEITED
    assert deposit.forfeit_reason == CancellationReason.TUTOR_FAULT
    assert balance_of(db, STUDENT_ID) == Decimal("840.00")
    assert balance_of(db, OTHER_STUDENT_ID) == Decimal("840.00")
    assert balance_of(db, TUTOR_ID) == Decimal("0.00")


def test_forfeit_goes_to_the_platform_when_students_are_not_paid_out(db, monkeypatch):
    monkeypatch.setattr(settings, "deposit_forfeit_to_students", False)
    class_id, _ = _class_with_deposit(db)
    wallets = EscrowService(db).wallet_service
    platform_before = Decimal(wallets.platform_wallet().balance)

    ClassService(db).cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    assert Decimal(wallets.platform_wallet().balance) - platform_before == Decimal("80.00")
    assert balance_of(db, STUDENT_ID) == Decimal("800.00")


def test_no_fault_cancellation_returns_the_deposit(db):
    class_id, _ = _class_with_deposit(db)

    result = ClassService(db).cancel_class(class_id, CancellationReason.ADMIN_FORCED)

    assert result.deposit_status == TutorDepositStatus.REFUNDED
    assert balance_of(db, TUTOR_ID) == Decimal("80.00")
    assert balance_of(db, STUDENT_ID) == Decimal("800.00")


def test_settled_deposit_cannot_be_settled_again(db):
    _, deposit = _class_with_deposit(db)
    service = EscrowService(db)
    service.refund_tutor_deposit(deposit.id)

    with pytest.raises(StateTransitionException):
        service.forfeit_tutor_deposit(deposit.id, CancellationReason.TUTOR_FAULT)

    assert balance_of(db, TUTOR_ID) == Decimal("80.00")


def test_class_waits_for_its_deposit_before_starting(db, monkeypatch):
    monkeypatch.setattr(settings, "tutor_deposit_required", True)
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    sweep_at = FIRST_LESSON_START + timedelta(minutes=10)

    waiting = ClassStatusService(db).advance_class_statuses(now=sweep_at)

    assert (waiting.classes_started, waiting.classes_awaiting_deposit, waiting.failed) == (0, 1, 0)
    assert ClassService(db).get_class(class_id).status == ClassStatus.ACTIVE
    with pytest.raises(BusinessRuleException) as exc_info:
        ClassService(db).start_class(class_id)
    assert exc_info.value.code == "DEPOSIT_REQUIRED"

    fund(db, TUTOR_ID, "80")
    EscrowService(db).hold_tutor_deposit(class_id, TUTOR_ID)
    started = ClassStatusService(db).advance_class_statuses(now=sweep_at)

    assert started.classes_started == 1
    assert ClassService(db).get_class(class_id).status == ClassStatus.ONGOING


def test_unpaid_class_starts_without_a_deposit(db, monkeypatch):
    monkeypatch.setattr(settings, "tutor_deposit_required", True)
    created = make_class(db)

    result = ClassStatusService(db).advance_class_statuses(now=FIRST_LESSON_START + timedelta(minutes=10))

    assert (result.classes_started, result.classes_awaiting_deposit) == (1, 0)
    assert ClassService(db).get_class(created.tutor_class.id).status == ClassStatus.ONGOING


@pytest.mark.parametrize(
    "amount,parts,expected",
    [
        ("80.00", 2, ["40.00", "40.00"]),
        ("10.00", 3, ["3.34", "3.33", "3.33"]),
        ("0.01", 2, ["0.01", "0.00"]),
    ],
)
def test_split_evenly_gives_leftover_cents_to_the_first_shares(amount, parts, expected):
    assert split_evenly(Decimal(amount), parts) == [Decimal(value) for value in expected]
