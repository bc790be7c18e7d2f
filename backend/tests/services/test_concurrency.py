"""
Concurrent writers on separate sessions: overlapping class creation for one
tutor and competing acceptance of sibling applications.
"""

from concurrent.futures import ThreadPoolExecutor
import threading

from sqlalchemy.orm import Session, sessionmaker

from tutorflow.core.enums import ApplicationStatus, ClassMode, ClassRequestStatus
from tutorflow.core.exceptions import ScheduleConflictException, StateTransitionException
from tutorflow.models.schedule import ScheduleEntry
from tutorflow.models.tutor_class import TutorClass
from tutorflow.services.class_request_service import ClassRequestService

from tests.utils.builders import OTHER_TUTOR_ID, START_DATE, STUDENT_ID, TUTOR_ID, make_class, weekly_rules


def _session_maker(db: Session) -> sessionmaker:
    return sessionmaker(bind=db.get_bind(), autocommit=False, autoflush=False, expire_on_commit=False)


def _run_concurrently(db: Session, work, args: list):
    """Run ``work(session, arg)`` for each arg on its own thread and session."""
    SessionMaker = _session_maker(db)
    barrier = threading.Barrier(len(args))

    def _worker(arg):
        session = SessionMaker()
        try:
            barrier.wait(timeout=5)
            try:
                return work(session, arg)
            except (ScheduleConflictException, StateTransitionException) as exc:
                return exc
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(args)) as executor:
        return list(executor.map(_worker, args))


def test_overlapping_classes_for_one_tutor_only_one_wins(db: Session) -> None:
    db.commit()

    results = _run_concurrently(db, lambda session, _: make_class(session), [0, 1])

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], ScheduleConflictException)

    db.expire_all()
    assert db.query(TutorClass).filter(TutorClass.tutor_id == TUTOR_ID).count() == 1
    live = (
        db.query(ScheduleEntry)
        .filter(ScheduleEntry.tutor_id == TUTOR_ID, ScheduleEntry.deleted_at.is_(None))
        .count()
    )
    assert live == 8


def test_sibling_applications_accepted_concurrently_create_one_class(db: Session) -> None:
    service = ClassRequestService(db)
    request = service.create_request(
        student_id=STUDENT_ID,
        subject="Physics",
        mode=ClassMode.ONLINE,
        budget="600",
        class_start_date=START_DATE,
        rules=weekly_rules(),
    )
    application_ids = [
        service.apply(request.id, TUTOR_ID).id,
        service.apply(request.id, OTHER_TUTOR_ID).id,
    ]
    db.commit()

    results = _run_concurrently(
        db,
        lambda session, application_id: ClassRequestService(session).accept_application(application_id, STUDENT_ID),
        application_ids,
    )

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], StateTransitionException)
    assert failures[0].details["current_status"] == ClassRequestStatus.ACCEPTED.value

    db.expire_all()
    assert db.query(TutorClass).count() == 1
    statuses = sorted(app.status.value for app in service.list_applications(request.id))
    assert statuses == sorted([ApplicationStatus.ACCEPTED.value, ApplicationStatus.REJECTED.value])
    assert service.get_request(request.id).status == ClassRequestStatus.ACCEPTED
