"""
Class request marketplace: posting, applying, acceptance and expiry.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from tutorflow.core.enums import (
    ApplicationStatus,
    ApprovalStatus,
    ClassMode,
    ClassRequestStatus,
    ClassStatus,
    EscrowStatus,
    PaymentStatus,
)
from tutorflow.core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    ScheduleConflictException,
    StateTransitionException,
    ValidationException,
)
from tutorflow.models.tutor_class import TutorClass
from tutorflow.repositories.event_outbox_repository import EventOutboxRepository
from tutorflow.services.class_request_service import ClassRequestService
from tutorflow.services.class_service import ClassService
from tutorflow.services.escrow_service import EscrowService

from tests.utils.builders import (
    OTHER_TUTOR_ID,
    START_DATE,
    STUDENT_ID,
    TUTOR_ID,
    balance_of,
    fund,
    make_class,
    weekly_rules,
)

BUDGET = Decimal("600.00")


def _post(db, **overrides):
    values = dict(
        student_id=STUDENT_ID,
        subject="Physics",
        mode=ClassMode.ONLINE,
        budget=BUDGET,
        class_start_date=START_DATE,
        rules=weekly_rules(),
    )
    values.update(overrides)
    return ClassRequestService(db).create_request(**values)


def test_request_is_pending_with_expiry_and_rules(db, clock):
    request = _post(db)

    assert request.status == ClassRequestStatus.PENDING
    assert request.expires_at == clock() + timedelta(days=7)
    assert [rule.day_of_week for rule in request.rules] == [0, 2]
    assert [r.id for r in ClassRequestService(db).list_open_requests()] == [request.id]


@pytest.mark.parametrize(
    "overrides",
    [
        {"subject": " "},
        {"budget": "0"},
        {"rules": []},
        {"class_start_date": date(2030, 1, 1)},
        {"tutor_id": STUDENT_ID},
    ],
    ids=["blank-subject", "zero-budget", "no-rules", "past-start", "directed-at-self"],
)
def test_invalid_requests_are_rejected(db, overrides):
    with pytest.raises(ValidationException):
        _post(db, **overrides)


def test_accepting_creates_class_lessons_and_enrollment(db):
    service = ClassRequestService(db)
    request = _post(db)
    chosen = service.apply(request.id, TUTOR_ID, message="I teach physics")
    sibling = service.apply(request.id, OTHER_TUTOR_ID)

    result = service.accept_application(chosen.id, STUDENT_ID)

    assert result.class_request.status == ClassRequestStatus.ACCEPTED
    assert result.application.status == ApplicationStatus.ACCEPTED
    assert result.rejected_application_ids == [sibling.id]
    statuses = {app.id: app.status for app in service.list_applications(request.id)}
    assert statuses == {chosen.id: ApplicationStatus.ACCEPTED, sibling.id: ApplicationStatus.REJECTED}

    tutor_class = result.tutor_class
    assert tutor_class.status == ClassStatus.ACTIVE
    assert tutor_class.tutor_id == TUTOR_ID
    assert tutor_class.class_request_id == request.id
    assert tutor_class.price == BUDGET
    assert len(result.lessons) == 8
    assert result.class_assign.student_id == STUDENT_ID
    assert result.class_assign.payment_status == PaymentStatus.UNPAID

    types = [event.event_type for event in EventOutboxRepository(db).list_for_aggregate(request.id)]
    assert types == ["ApplicationSubmitted", "ApplicationSubmitted", "RequestAccepted"]


def test_paying_for_a_request_class_approves_the_student(db):
    service = ClassRequestService(db)
    request = _post(db)
    result = service.accept_application(service.apply(request.id, TUTOR_ID).id, STUDENT_ID)
    fund(db, STUDENT_ID, BUDGET)

    escrow = EscrowService(db).pay_escrow(result.tutor_class.id, STUDENT_ID)

    assert escrow.gross_amount == BUDGET
    assign = ClassService(db).get_roster(result.tutor_class.id)[0]
    assert assign.approval_status == ApprovalStatus.APPROVED
    assert assign.payment_status == PaymentStatus.PAID


def test_request_can_only_be_accepted_once(db):
    service = ClassRequestService(db)
    request = _post(db)
    first = service.apply(request.id, TUTOR_ID)
    second = service.apply(request.id, OTHER_TUTOR_ID)
    service.accept_application(first.id, STUDENT_ID)

    with pytest.raises(StateTransitionException):
        service.accept_application(second.id, STUDENT_ID)
    with pytest.raises(BusinessRuleException):
        service.apply(request.id, "tutor-03")

    assert db.query(TutorClass).count() == 1


def test_only_the_owner_accepts(db):
    service = ClassRequestService(db)
    request = _post(db)
    application = service.apply(request.id, TUTOR_ID)

    with pytest.raises(ForbiddenException):
        service.accept_application(application.id, "student-99")


def test_tutor_schedule_conflict_aborts_acceptance(db):
    make_class(db)
    service = ClassRequestService(db)
    request = _post(db)
    application = service.apply(request.id, TUTOR_ID)

    with pytest.raises(ScheduleConflictException):
        service.accept_application(application.id, STUDENT_ID)

    db.expire_all()
    assert service.get_request(request.id).status == ClassRequestStatus.PENDING
    assert service.list_applications(request.id)[0].status == ApplicationStatus.PENDING
    assert db.query(TutorClass).count() == 1


def test_directed_request_is_limited_to_its_tutor(db):
    service = ClassRequestService(db)
    request = _post(db, tutor_id=TUTOR_ID)

    with pytest.raises(ForbiddenException):
        service.apply(request.id, OTHER_TUTOR_ID)
    assert [r.id for r in service.list_open_requests(tutor_id=TUTOR_ID)] == [request.id]

    declined = service.decline_direct_request(request.id, TUTOR_ID)
    assert declined.status == ClassRequestStatus.REJECTED


def test_duplicate_application_is_a_conflict(db):
    service = ClassRequestService(db)
    request = _post(db)
    service.apply(request.id, TUTOR_ID)

    with pytest.raises(ConflictException):
        service.apply(request.id, TUTOR_ID)
    with pytest.raises(ValidationException):
        service.apply(request.id, STUDENT_ID)


def test_owner_rejects_a_single_application(db):
    service = ClassRequestService(db)
    request = _post(db)
    rejected = service.apply(request.id, TUTOR_ID)
    kept = service.apply(request.id, OTHER_TUTOR_ID)

    with pytest.raises(ForbiddenException):
        service.reject_application(rejected.id, "student-99")
    service.reject_application(rejected.id, STUDENT_ID)

    with pytest.raises(StateTransitionException):
        service.reject_application(rejected.id, STUDENT_ID)
    statuses = {app.id: app.status for app in service.list_applications(request.id)}
    assert statuses == {rejected.id: ApplicationStatus.REJECTED, kept.id: ApplicationStatus.PENDING}
    assert service.get_request(request.id).status == ClassRequestStatus.PENDING


def test_withdrawn_application_cannot_be_accepted(db):
    service = ClassRequestService(db)
    request = _post(db)
    application = service.apply(request.id, TUTOR_ID)
    service.withdraw_application(application.id, TUTOR_ID)

    with pytest.raises(StateTransitionException):
        service.accept_application(application.id, STUDENT_ID)


def test_cancelling_a_pending_request_rejects_applications(db):
    service = ClassRequestService(db)
    request = _post(db)
    application = service.apply(request.id, TUTOR_ID)

    result = service.cancel_request(request.id, STUDENT_ID)

    assert result.class_request.status == ClassRequestStatus.CANCELLED
    assert result.class_result is None
    assert [(app.id, app.status) for app in service.list_applications(request.id)] == [
        (application.id, ApplicationStatus.REJECTED)
    ]


def test_cancelling_an_accepted_request_cancels_its_class(db):
    service = ClassRequestService(db)
    request = _post(db)
    accepted = service.accept_application(service.apply(request.id, TUTOR_ID).id, STUDENT_ID)
    fund(db, STUDENT_ID, BUDGET)
    escrow = EscrowService(db).pay_escrow(accepted.tutor_class.id, STUDENT_ID)

    result = service.cancel_request(request.id, STUDENT_ID)

    assert result.class_result.new_status == ClassStatus.CANCELLED
    # More than 48 hours before the first lesson.
    assert result.class_result.total_refunded_amount == BUDGET
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.REFUNDED
    assert balance_of(db, STUDENT_ID) == BUDGET


def test_expiry_sweep_expires_only_overdue_pending_requests(db, clock):
    service = ClassRequestService(db)
    stale = _post(db)
    application = service.apply(stale.id, TUTOR_ID)
    clock.advance(days=5)
    fresh = _post(db, class_start_date=date(2030, 2, 4))
    accepted_source = _post(db, class_start_date=date(2030, 3, 4))
    service.accept_application(service.apply(accepted_source.id, OTHER_TUTOR_ID).id, STUDENT_ID)

    result = ClassRequestService(db).expire_class_requests(now=clock() + timedelta(days=3))

    assert result.expired_ids == [stale.id]
    assert result.failed == 0
    db.expire_all()
    assert service.get_request(stale.id).status == ClassRequestStatus.EXPIRED
    assert service.get_request(fresh.id).status == ClassRequestStatus.PENDING
    assert service.get_request(accepted_source.id).status == ClassRequestStatus.ACCEPTED
    assert [(app.id, app.status) for app in service.list_applications(stale.id)] == [
        (application.id, ApplicationStatus.REJECTED)
    ]

    again = ClassRequestService(db).expire_class_requests(now=clock() + timedelta(days=3))
    assert again.expired == 0


def test_expired_request_refuses_new_applications(db, clock):
    request = _post(db)
    clock.advance(days=8)

    with pytest.raises(BusinessRuleException) as exc_info:
        ClassRequestService(db).apply(request.id, TUTOR_ID)

    assert exc_info.value.code == "REQUEST_EXPIRED"
