"""
ClassService: creation with schedule generation, enrollment, cancellation
and completion.
"""

from datetime import datetime, time, timezone
from decimal import Decimal

import pytest

from tutorflow.core.enums import (
    ApprovalStatus,
    CancellationReason,
    ClassStatus,
    EscrowStatus,
    LessonStatus,
    PaymentStatus,
)
from tutorflow.core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ScheduleConflictException,
    StateTransitionException,
    ValidationException,
)
from tutorflow.models.lesson import Lesson
from tutorflow.models.schedule import RecurringScheduleRule, ScheduleEntry
from tutorflow.models.tutor_class import TutorClass
from tutorflow.repositories.event_outbox_repository import EventOutboxRepository
from tutorflow.services.class_service import ClassService
from tutorflow.services.escrow_service import EscrowService
from tutorflow.services.recurring_rule_expander import RecurringRule

from tests.utils.builders import (
    CLASS_PRICE,
    OTHER_STUDENT_ID,
    OTHER_TUTOR_ID,
    STUDENT_ID,
    TUTOR_ID,
    balance_of,
    complete_lessons,
    enroll_and_pay,
    fund,
    make_class,
    weekly_rules,
)


def test_create_class_generates_lessons_and_activates(db):
    created = make_class(db)

    tutor_class = created.tutor_class
    assert tutor_class.status == ClassStatus.ACTIVE
    assert len(created.lessons) == 8
    assert created.lessons[0].start_at == datetime(2030, 1, 14, 11, 0, tzinfo=timezone.utc)

    lessons = ClassService(db).list_lessons(tutor_class.id)
    assert [lesson.sequence for lesson in lessons] == list(range(1, 9))
    assert all(lesson.status == LessonStatus.SCHEDULED for lesson in lessons)
    assert all(lesson.schedule_entry.tutor_id == TUTOR_ID for lesson in lessons)
    assert db.query(RecurringScheduleRule).filter_by(class_id=tutor_class.id).count() == 2

    events = EventOutboxRepository(db).list_for_aggregate(tutor_class.id)
    assert [event.event_type for event in events] == ["ClassCreated"]
    assert events[0].payload["lesson_count"] == 8


def test_conflicting_class_leaves_nothing_behind(db):
    make_class(db)

    with pytest.raises(ScheduleConflictException) as exc_info:
        make_class(db, rules=[weekly_rules()[1]])

    assert exc_info.value.occurrence_index == 0
    assert db.query(TutorClass).count() == 1
    assert db.query(Lesson).count() == 8
    assert db.query(ScheduleEntry).count() == 8


def test_same_slot_is_free_for_another_tutor(db):
    make_class(db)

    other = make_class(db, tutor_id=OTHER_TUTOR_ID)

    assert len(other.lessons) == 8


@pytest.mark.parametrize(
    "overrides",
    [{"price": "-1"}, {"student_limit": 0}, {"mode": "hybrid"}, {"rules": []}],
    ids=["negative-price", "no-seats", "unknown-mode", "no-rules"],
)
def test_invalid_class_input_is_rejected(db, overrides):
    with pytest.raises(ValidationException):
        make_class(db, **overrides)

    assert db.query(TutorClass).count() == 0


def test_approval_requires_payment_or_waiver(db):
    created = make_class(db)
    service = ClassService(db)
    assign = service.enroll_student(created.tutor_class.id, STUDENT_ID)

    with pytest.raises(BusinessRuleException) as exc_info:
        service.approve_enrollment(assign.id, TUTOR_ID)
    assert exc_info.value.code == "PAYMENT_REQUIRED"

    approved = service.approve_enrollment(assign.id, TUTOR_ID, waive_payment=True)

    assert approved.approval_status == ApprovalStatus.APPROVED
    assert [row.id for row in service.get_roster(created.tutor_class.id)] == [assign.id]
    assert approved.counts_toward_roster
    assert service.get_class(created.tutor_class.id).current_student_count == 1


def test_only_the_class_tutor_manages_enrollments(db):
    created = make_class(db)
    service = ClassService(db)
    assign = service.enroll_student(created.tutor_class.id, STUDENT_ID)

    with pytest.raises(ForbiddenException):
        service.approve_enrollment(assign.id, OTHER_TUTOR_ID, waive_payment=True)


def test_enrollment_is_unique_and_bounded_by_limit(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    service = ClassService(db)
    assign = service.enroll_student(class_id, STUDENT_ID)

    with pytest.raises(ConflictException):
        service.enroll_student(class_id, STUDENT_ID)
    with pytest.raises(ValidationException):
        service.enroll_student(class_id, TUTOR_ID)

    service.approve_enrollment(assign.id, TUTOR_ID, waive_payment=True)
    with pytest.raises(BusinessRuleException) as exc_info:
        service.enroll_student(class_id, OTHER_STUDENT_ID)
    assert exc_info.value.code == "CLASS_FULL"


def test_rejecting_a_paid_enrollment_refunds_in_full(db):
    created = make_class(db)
    escrow = enroll_and_pay(db, created.tutor_class.id)
    service = ClassService(db)
    assign = service.assign_repository.get_for_class_student(created.tutor_class.id, STUDENT_ID)

    rejected = service.reject_enrollment(assign.id, TUTOR_ID)

    assert rejected.approval_status == ApprovalStatus.REJECTED
    assert rejected.payment_status == PaymentStatus.REFUNDED
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.REFUNDED
    assert balance_of(db, STUDENT_ID) == CLASS_PRICE


def test_cancel_frees_schedule_and_refunds_by_policy(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)

    result = ClassService(db).cancel_class(class_id, CancellationReason.MUTUAL_CONSENT, cancelled_by=TUTOR_ID)

    assert result.new_status == ClassStatus.CANCELLED
    assert result.refunded_escrows_count == 1
    assert result.total_refunded_amount == Decimal("640.00")
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.REFUNDED
    assert balance_of(db, STUDENT_ID) == Decimal("640.00")
    assert balance_of(db, TUTOR_ID) == Decimal("140.80")

    lessons = ClassService(db).list_lessons(class_id)
    assert all(lesson.status == LessonStatus.CANCELLED for lesson in lessons)
    assert db.query(ScheduleEntry).filter(ScheduleEntry.deleted_at.is_(None)).count() == 0

    # Freed slots can be booked again.
    assert len(make_class(db).lessons) == 8


def test_cancel_is_idempotent(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    service = ClassService(db)
    service.cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    again = service.cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    assert again.already_cancelled
    assert again.refunded_escrows_count == 0
    assert balance_of(db, STUDENT_ID) == CLASS_PRICE
    cancelled = [
        event for event in EventOutboxRepository(db).list_for_aggregate(class_id)
        if event.event_type == "ClassCancelled"
    ]
    assert len(cancelled) == 1


def test_student_cancellation_inside_notice_window_keeps_part(db, clock):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    # First lesson starts 2030-01-14 11:00 UTC; 30 hours before.
    clock.set(datetime(2030, 1, 13, 5, 0, tzinfo=timezone.utc))

    result = ClassService(db).cancel_class(class_id, CancellationReason.STUDENT_INITIATED, cancelled_by=STUDENT_ID)

    assert result.total_refunded_amount == Decimal("640.00")


def test_completed_class_cannot_be_cancelled(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)
    service = ClassService(db)
    complete_lessons(db, class_id)
    service.complete_class(class_id)

    with pytest.raises(StateTransitionException):
        service.cancel_class(class_id, CancellationReason.ADMIN_FORCED)

    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.RELEASED
    assert balance_of(db, TUTOR_ID) == Decimal("704.00")


def test_frozen_payer_wallet_blocks_refund_and_cancellation(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    wallets = EscrowService(db).wallet_service
    wallets.freeze(wallets.get_user_wallet(STUDENT_ID).id)

    with pytest.raises(BusinessRuleException):
        ClassService(db).cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    db.expire_all()
    assert ClassService(db).get_class(class_id).status == ClassStatus.ACTIVE


def test_waived_enrollment_can_still_be_funded_later(db):
    created = make_class(db, student_limit=2)
    class_id = created.tutor_class.id
    service = ClassService(db)
    assign = service.enroll_student(class_id, STUDENT_ID)
    service.approve_enrollment(assign.id, TUTOR_ID, waive_payment=True)
    fund(db, STUDENT_ID, CLASS_PRICE)

    escrow = EscrowService(db).pay_escrow(class_id, STUDENT_ID)

    assert escrow.status == EscrowStatus.HELD
    assert service.get_class(class_id).current_student_count == 1


def test_completion_splits_a_large_price_by_commission(db):
    created = make_class(db, price="1000000")
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)
    assert escrow.gross_amount == Decimal("1000000.00")
    complete_lessons(db, class_id)

    ClassService(db).complete_class(class_id)

    wallets = EscrowService(db).wallet_service
    assert balance_of(db, TUTOR_ID) == Decimal("880000.00")
    assert Decimal(wallets.platform_wallet().balance) == Decimal("120000.00")
    assert Decimal(wallets.escrow_wallet().balance) == Decimal("0.00")


def test_admin_cancel_refunds_only_the_paying_student(db):
    created = make_class(db, price="500000", student_limit=2)
    class_id = created.tutor_class.id
    service = ClassService(db)
    service.enroll_student(class_id, OTHER_STUDENT_ID)
    enroll_and_pay(db, class_id, STUDENT_ID)

    result = service.cancel_class(class_id, CancellationReason.ADMIN_FORCED)

    assert result.refunded_escrows_count == 1
    assert result.total_refunded_amount == Decimal("500000.00")
    escrows = EscrowService(db).list_for_class(class_id)
    assert [(e.student_id, e.status) for e in escrows] == [(STUDENT_ID, EscrowStatus.REFUNDED)]
    assert balance_of(db, STUDENT_ID) == Decimal("500000.00")


def test_completion_needs_most_lessons_taught(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)
    complete_lessons(db, class_id, 7)
    service = ClassService(db)

    with pytest.raises(BusinessRuleException) as exc_info:
        service.complete_class(class_id)

    assert exc_info.value.code == "CLASS_NOT_FINISHED"
    assert exc_info.value.details["taught_lessons"] == 7
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.HELD

    complete_lessons(db, class_id)
    assert service.complete_class(class_id).status == ClassStatus.COMPLETED


def test_mostly_taught_class_only_cancels_for_a_late_reason(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    complete_lessons(db, class_id, 7)
    service = ClassService(db)

    with pytest.raises(BusinessRuleException) as exc_info:
        service.cancel_class(class_id, CancellationReason.TUTOR_FAULT)
    assert exc_info.value.code == "CLASS_MOSTLY_COMPLETED"
    assert service.get_class(class_id).status == ClassStatus.ACTIVE

    result = service.cancel_class(class_id, CancellationReason.SYSTEM_ERROR)

    assert result.new_status == ClassStatus.CANCELLED
    assert result.total_refunded_amount == CLASS_PRICE


def test_cancel_below_the_lock_refunds_untaught_share(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    complete_lessons(db, class_id, 6)

    result = ClassService(db).cancel_class(class_id, CancellationReason.TUTOR_FAULT)

    assert result.total_refunded_amount == Decimal("200.00")


def test_student_withdraws_before_the_cutoff_with_full_refund(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)

    result = ClassService(db).withdraw_from_class(class_id, STUDENT_ID, reason="Schedule changed")

    assert result.refunded_amount == CLASS_PRICE
    assign = result.class_assign
    assert assign.approval_status == ApprovalStatus.REJECTED
    assert assign.payment_status == PaymentStatus.REFUNDED
    assert assign.withdrawn_at is not None
    assert assign.withdrawal_reason == "Schedule changed"
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.REFUNDED
    assert balance_of(db, STUDENT_ID) == CLASS_PRICE
    # Lessons stay with the class.
    assert len(ClassService(db).list_lessons(class_id)) == 8
    events = EventOutboxRepository(db).list_for_aggregate(class_id)
    assert "EnrollmentWithdrawn" in [event.event_type for event in events]


def test_withdrawal_closes_the_day_before_the_start_date(db, clock):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    # 2030-01-13 01:00 local.
    clock.set(datetime(2030, 1, 12, 18, 0, tzinfo=timezone.utc))

    with pytest.raises(BusinessRuleException) as exc_info:
        ClassService(db).withdraw_from_class(class_id, STUDENT_ID)

    assert exc_info.value.code == "WITHDRAWAL_CLOSED"
    assert balance_of(db, STUDENT_ID) == Decimal("0.00")


def test_no_withdrawal_from_an_ongoing_class(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    enroll_and_pay(db, class_id)
    service = ClassService(db)
    service.start_class(class_id)

    with pytest.raises(BusinessRuleException) as exc_info:
        service.withdraw_from_class(class_id, STUDENT_ID)

    assert exc_info.value.code == "WITHDRAWAL_CLOSED"


def test_withdrawing_without_an_enrollment_is_not_found(db):
    created = make_class(db)

    with pytest.raises(NotFoundException):
        ClassService(db).withdraw_from_class(created.tutor_class.id, STUDENT_ID)


def test_removing_one_student_keeps_the_group_class_running(db):
    created = make_class(db, student_limit=2)
    class_id = created.tutor_class.id
    service = ClassService(db)
    removed_escrow = enroll_and_pay(db, class_id, STUDENT_ID)
    kept_escrow = enroll_and_pay(db, class_id, OTHER_STUDENT_ID)
    for assign in service.assign_repository.list_for_class(class_id):
        service.approve_enrollment(assign.id, TUTOR_ID)
    assert service.get_class(class_id).current_student_count == 2

    result = service.cancel_student_enrollment(class_id, STUDENT_ID, "Repeated no-shows", cancelled_by="admin-01")

    assert result.refunded_amount == CLASS_PRICE
    assert result.class_assign.withdrawal_reason == "Repeated no-shows"
    assert EscrowService(db).get_escrow(removed_escrow.id).status == EscrowStatus.REFUNDED
    assert EscrowService(db).get_escrow(kept_escrow.id).status == EscrowStatus.HELD
    tutor_class = service.get_class(class_id)
    assert tutor_class.status == ClassStatus.ACTIVE
    assert tutor_class.current_student_count == 1

    with pytest.raises(StateTransitionException):
        service.cancel_student_enrollment(class_id, STUDENT_ID, "again")


def test_one_to_one_class_is_not_cancelled_per_student(db):
    created = make_class(db)
    enroll_and_pay(db, created.tutor_class.id)

    with pytest.raises(BusinessRuleException) as exc_info:
        ClassService(db).cancel_student_enrollment(created.tutor_class.id, STUDENT_ID, "Duplicate booking")

    assert exc_info.value.code == "SINGLE_STUDENT_CLASS"


def test_removal_requires_a_reason(db):
    created = make_class(db, student_limit=2)

    with pytest.raises(ValidationException):
        ClassService(db).cancel_student_enrollment(created.tutor_class.id, STUDENT_ID, "  ")


TUESDAY_THURSDAY = [
    RecurringRule(1, time(18, 0), time(19, 30)),
    RecurringRule(3, time(18, 0), time(19, 30)),
]


def test_schedule_update_replaces_rules_and_lessons(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    service = ClassService(db)

    result = service.update_class_schedule(class_id, TUTOR_ID, TUESDAY_THURSDAY)

    assert len(result.lessons) == 8
    assert result.lessons[0].start_at == datetime(2030, 1, 15, 11, 0, tzinfo=timezone.utc)
    lessons = service.list_lessons(class_id)
    old = [lesson for lesson in lessons if lesson.sequence <= 8]
    new = [lesson for lesson in lessons if lesson.sequence > 8]
    assert all(lesson.status == LessonStatus.CANCELLED for lesson in old)
    assert [lesson.status for lesson in new] == [LessonStatus.SCHEDULED] * 8
    rules = db.query(RecurringScheduleRule).filter_by(class_id=class_id).all()
    assert sorted(rule.day_of_week for rule in rules) == [1, 3]
    live = db.query(ScheduleEntry).filter(ScheduleEntry.deleted_at.is_(None)).count()
    assert live == 8
    events = EventOutboxRepository(db).list_for_aggregate(class_id)
    assert "ClassScheduleUpdated" in [event.event_type for event in events]

    # The Monday slots are free again.
    assert len(make_class(db).lessons) == 8


def test_conflicting_schedule_update_changes_nothing(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    make_class(db, rules=[RecurringRule(1, time(18, 30), time(20, 0))])

    with pytest.raises(ScheduleConflictException):
        ClassService(db).update_class_schedule(class_id, TUTOR_ID, TUESDAY_THURSDAY)

    db.expire_all()
    lessons = ClassService(db).list_lessons(class_id)
    assert len(lessons) == 8
    assert all(lesson.status == LessonStatus.SCHEDULED for lesson in lessons)
    rules = db.query(RecurringScheduleRule).filter_by(class_id=class_id).all()
    assert sorted(rule.day_of_week for rule in rules) == [0, 2]


def test_schedule_is_locked_once_payments_are_held(db):
    created = make_class(db)
    enroll_and_pay(db, created.tutor_class.id)

    with pytest.raises(BusinessRuleException) as exc_info:
        ClassService(db).update_class_schedule(created.tutor_class.id, TUTOR_ID, TUESDAY_THURSDAY)

    assert exc_info.value.code == "SCHEDULE_LOCKED"


def test_only_the_class_tutor_changes_the_schedule(db):
    created = make_class(db)

    with pytest.raises(ForbiddenException):
        ClassService(db).update_class_schedule(created.tutor_class.id, OTHER_TUTOR_ID, TUESDAY_THURSDAY)
