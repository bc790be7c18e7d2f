"""
Time-driven lifecycle sweep: lessons complete as their slots pass, classes
start, finish and release escrow, and unpaid request classes are cancelled.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tutorflow.core.enums import (
    CancellationReason,
    ClassMode,
    ClassStatus,
    EscrowStatus,
    LessonStatus,
)
from tutorflow.services.class_request_service import ClassRequestService
from tutorflow.services.class_service import ClassService
from tutorflow.services.class_status_service import ClassStatusService
from tutorflow.services.escrow_service import EscrowService

from tests.utils.builders import (
    OTHER_TUTOR_ID,
    START_DATE,
    STUDENT_ID,
    TUTOR_ID,
    balance_of,
    enroll_and_pay,
    fund,
    make_class,
    weekly_rules,
)

FIRST_LESSON_START = datetime(2030, 1, 14, 11, 0, tzinfo=timezone.utc)
LAST_LESSON_END = datetime(2030, 2, 6, 12, 30, tzinfo=timezone.utc)


def test_nothing_moves_before_the_first_lesson(db):
    make_class(db)

    result = ClassStatusService(db).advance_class_statuses(now=FIRST_LESSON_START - timedelta(minutes=1))

    assert (result.lessons_completed, result.classes_started, result.classes_completed) == (0, 0, 0)


def test_class_starts_once_first_lesson_begins(db):
    created = make_class(db)

    result = ClassStatusService(db).advance_class_statuses(now=FIRST_LESSON_START + timedelta(minutes=10))

    assert result.classes_started == 1
    assert result.lessons_completed == 0
    assert ClassService(db).get_class(created.tutor_class.id).status == ClassStatus.ONGOING


def test_lessons_complete_as_their_slots_end(db):
    created = make_class(db)

    result = ClassStatusService(db).advance_class_statuses(now=datetime(2030, 1, 17, tzinfo=timezone.utc))

    assert result.lessons_completed == 2
    lessons = ClassService(db).list_lessons(created.tutor_class.id)
    assert [lesson.status for lesson in lessons[:3]] == [
        LessonStatus.COMPLETED,
        LessonStatus.COMPLETED,
        LessonStatus.SCHEDULED,
    ]
    assert lessons[0].completed_at is not None


def test_class_completes_and_pays_tutor_after_last_lesson(db):
    created = make_class(db)
    class_id = created.tutor_class.id
    escrow = enroll_and_pay(db, class_id)

    result = ClassStatusService(db).advance_class_statuses(now=LAST_LESSON_END)

    assert result.lessons_completed == 8
    assert result.classes_completed == 1
    assert result.failed == 0
    assert ClassService(db).get_class(class_id).status == ClassStatus.COMPLETED
    assert EscrowService(db).get_escrow(escrow.id).status == EscrowStatus.RELEASED
    assert balance_of(db, TUTOR_ID) == Decimal("704.00")

    again = ClassStatusService(db).advance_class_statuses(now=LAST_LESSON_END + timedelta(days=1))
    assert (again.lessons_completed, again.classes_completed) == (0, 0)


def test_cancelled_class_lessons_are_left_alone(db):
    created = make_class(db)
    ClassService(db).cancel_class(created.tutor_class.id, CancellationReason.TUTOR_FAULT)

    result = ClassStatusService(db).advance_class_statuses(now=LAST_LESSON_END)

    assert result.lessons_completed == 0
    assert result.classes_completed == 0
    assert ClassService(db).get_class(created.tutor_class.id).status == ClassStatus.CANCELLED


def test_unpaid_request_class_is_cancelled_after_grace(db, clock):
    requests = ClassRequestService(db)
    request = requests.create_request(
        student_id=STUDENT_ID,
        subject="Chemistry",
        mode=ClassMode.OFFLINE,
        budget="500",
        class_start_date=START_DATE,
        rules=weekly_rules(),
    )
    accepted = requests.accept_application(requests.apply(request.id, OTHER_TUTOR_ID).id, STUDENT_ID)
    class_id = accepted.tutor_class.id

    early = ClassStatusService(db).advance_class_statuses(now=clock() + timedelta(hours=23))
    assert early.classes_cancelled_unpaid == 0

    late = ClassStatusService(db).advance_class_statuses(now=clock() + timedelta(hours=25))

    assert late.classes_cancelled_unpaid == 1
    tutor_class = ClassService(db).get_class(class_id)
    assert tutor_class.status == ClassStatus.CANCELLED
    assert tutor_class.cancellation_reason == CancellationReason.STUDENT_FAULT


def test_paid_request_class_is_not_cancelled(db, clock):
    requests = ClassRequestService(db)
    request = requests.create_request(
        student_id=STUDENT_ID,
        subject="Chemistry",
        mode=ClassMode.OFFLINE,
        budget="500",
        class_start_date=START_DATE,
        rules=weekly_rules(),
    )
    accepted = requests.accept_application(requests.apply(request.id, TUTOR_ID).id, STUDENT_ID)
    fund(db, STUDENT_ID, "500")
    EscrowService(db).pay_escrow(accepted.tutor_class.id, STUDENT_ID)

    result = ClassStatusService(db).advance_class_statuses(now=clock() + timedelta(hours=48))

    assert result.classes_cancelled_unpaid == 0
    assert ClassService(db).get_class(accepted.tutor_class.id).status == ClassStatus.ACTIVE


def test_request_class_whose_student_was_rejected_and_refunded_is_cancelled(db, clock):
    requests = ClassRequestService(db)
    request = requests.create_request(
        student_id=STUDENT_ID,
        subject="Chemistry",
        mode=ClassMode.OFFLINE,
        budget="500",
        class_start_date=START_DATE,
        rules=weekly_rules(),
    )
    accepted = requests.accept_application(requests.apply(request.id, TUTOR_ID).id, STUDENT_ID)
    fund(db, STUDENT_ID, "500")
    EscrowService(db).pay_escrow(accepted.tutor_class.id, STUDENT_ID)
    ClassService(db).reject_enrollment(accepted.class_assign.id, TUTOR_ID)
    assert balance_of(db, STUDENT_ID) == Decimal("500.00")

    result = ClassStatusService(db).advance_class_statuses(now=clock() + timedelta(hours=25))

    assert result.classes_cancelled_unpaid == 1
    tutor_class = ClassService(db).get_class(accepted.tutor_class.id)
    assert tutor_class.status == ClassStatus.CANCELLED
    assert tutor_class.cancellation_reason == CancellationReason.STUDENT_FAULT
