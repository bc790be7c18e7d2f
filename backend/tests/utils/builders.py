"""Builders for classes, enrollments and funded wallets used across service tests."""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from tutorflow.core.enums import ClassMode, LessonStatus
from tutorflow.models.escrow import Escrow
from tutorflow.models.lesson import Lesson
from tutorflow.models.wallet import Wallet
from tutorflow.services.class_service import ClassCreationResult, ClassService
from tutorflow.services.escrow_service import EscrowService
from tutorflow.services.recurring_rule_expander import RecurringRule
from tutorflow.services.wallet_service import WalletService

TUTOR_ID = "tutor-01"
OTHER_TUTOR_ID = "tutor-02"
STUDENT_ID = "student-01"
OTHER_STUDENT_ID = "student-02"

# Monday one week after the test clock starts.
START_DATE = date(2030, 1, 14)
CLASS_PRICE = Decimal("800.00")


def weekly_rules() -> List[RecurringRule]:
    """Monday and Wednesday 18:00-19:30 local, i.e. 11:00-12:30 UTC."""
    return [
        RecurringRule(0, time(18, 0), time(19, 30)),
        RecurringRule(2, time(18, 0), time(19, 30)),
    ]


def fund(db: Session, user_id: str, amount: Decimal | str | int) -> Wallet:
    service = WalletService(db)
    service.deposit(user_id, Decimal(str(amount)))
    wallet = service.get_user_wallet(user_id)
    assert wallet is not None
    return wallet


def balance_of(db: Session, user_id: str) -> Decimal:
    wallet = WalletService(db).get_user_wallet(user_id)
    return Decimal("0.00") if wallet is None else Decimal(wallet.balance)


def make_class(
    db: Session,
    *,
    tutor_id: str = TUTOR_ID,
    price: Decimal | str = CLASS_PRICE,
    student_limit: int = 1,
    mode: ClassMode = ClassMode.ONLINE,
    rules: Optional[Sequence[RecurringRule]] = None,
    start_date: date = START_DATE,
) -> ClassCreationResult:
    return ClassService(db).create_class(
        tutor_id=tutor_id,
        title="Algebra II",
        subject="math",
        mode=mode,
        price=price,
        start_date=start_date,
        rules=list(rules) if rules is not None else weekly_rules(),
        student_limit=student_limit,
    )


def enroll_and_pay(db: Session, class_id: str, student_id: str = STUDENT_ID) -> Escrow:
    """Enroll, top up the student's wallet with the class price and hold it in escrow."""
    service = ClassService(db)
    tutor_class = service.get_class(class_id)
    service.enroll_student(class_id, student_id)
    fund(db, student_id, tutor_class.price)
    return EscrowService(db).pay_escrow(class_id, student_id)


def complete_lessons(db: Session, class_id: str, count: Optional[int] = None) -> List[Lesson]:
    """Mark the first ``count`` scheduled lessons (all by default) as taught."""
    lessons = [
        lesson
        for lesson in ClassService(db).list_lessons(class_id)
        if lesson.status == LessonStatus.SCHEDULED
    ]
    taught = lessons if count is None else lessons[:count]
    for lesson in taught:
        lesson.status = LessonStatus.COMPLETED
        lesson.completed_at = lesson.schedule_entry.end_at
    db.commit()
    return taught
