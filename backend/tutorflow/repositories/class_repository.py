# backend/tutorflow/repositories/class_repository.py
"""Class and enrollment data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import ApprovalStatus, ClassStatus, LessonStatus, PaymentStatus
from ..core.exceptions import RepositoryException
from ..models.lesson import Lesson
from ..models.schedule import ScheduleEntry
from ..models.tutor_class import ClassAssign, TutorClass
from .base_repository import BaseRepository


class ClassRepository(BaseRepository[TutorClass]):
    def __init__(self, db: Session):
        super().__init__(db, TutorClass)

    def find_active_with_started_lessons(self, now: datetime, limit: int) -> List[str]:
        """Ids of ACTIVE classes whose first lesson has begun."""
        started = exists().where(
            and_(
                Lesson.class_id == TutorClass.id,
                ScheduleEntry.lesson_id == Lesson.id,
                ScheduleEntry.deleted_at.is_(None),
                ScheduleEntry.start_at <= now,
            )
        )
        query = (
            self.db.query(TutorClass.id)
            .filter(TutorClass.status == ClassStatus.ACTIVE, started)
            .order_by(TutorClass.id.asc())
            .limit(limit)
        )
        return [row[0] for row in self._execute_query(query)]

    def find_with_all_lessons_finished(self, limit: int) -> List[str]:
        """Ids of ACTIVE/ONGOING classes that have lessons and none still scheduled."""
        has_lessons = exists().where(Lesson.class_id == TutorClass.id)
        still_scheduled = exists().where(
            and_(Lesson.class_id == TutorClass.id, Lesson.status == LessonStatus.SCHEDULED)
        )
        query = (
            self.db.query(TutorClass.id)
            .filter(
                TutorClass.status.in_([ClassStatus.ACTIVE, ClassStatus.ONGOING]),
                has_lessons,
                ~still_scheduled,
            )
            .order_by(TutorClass.id.asc())
            .limit(limit)
        )
        return [row[0] for row in self._execute_query(query)]

    def find_unpaid_request_classes(self, created_before: datetime, limit: int) -> List[str]:
        """
        Ids of request-born classes, not yet started, with no live enrollment
        that is paid or waived. Rejected or refunded students do not count.
        """
        paid_or_waived = exists().where(
            and_(
                ClassAssign.class_id == TutorClass.id,
                ClassAssign.approval_status != ApprovalStatus.REJECTED,
                or_(
                    ClassAssign.payment_status == PaymentStatus.PAID,
                    ClassAssign.payment_waived.is_(True),
                ),
            )
        )
        query = (
            self.db.query(TutorClass.id)
            .filter(
                TutorClass.class_request_id.isnot(None),
                TutorClass.status.in_([ClassStatus.PENDING, ClassStatus.ACTIVE]),
                TutorClass.created_at <= created_before,
                ~paid_or_waived,
            )
            .order_by(TutorClass.id.asc())
            .limit(limit)
        )
        return [row[0] for row in self._execute_query(query)]


class ClassAssignRepository(BaseRepository[ClassAssign]):
    def __init__(self, db: Session):
        super().__init__(db, ClassAssign)

    def get_for_class_student(self, class_id: str, student_id: str) -> Optional[ClassAssign]:
        return self.find_one_by(class_id=class_id, student_id=student_id)

    def list_for_class(self, class_id: str) -> List[ClassAssign]:
        query = self._build_query().filter(ClassAssign.class_id == class_id)
        return self._execute_query(query.order_by(ClassAssign.enrolled_at.asc()))

    def list_roster(self, class_id: str) -> List[ClassAssign]:
        """Enrollments that count: Approved and either Paid or waived."""
        query = self._build_query().filter(
            ClassAssign.class_id == class_id,
            ClassAssign.approval_status == ApprovalStatus.APPROVED,
            or_(
                ClassAssign.payment_status == PaymentStatus.PAID,
                ClassAssign.payment_waived.is_(True),
            ),
        )
        return self._execute_query(query.order_by(ClassAssign.enrolled_at.asc()))

    def count_roster(self, class_id: str) -> int:
        query = self.db.query(ClassAssign).filter(
            ClassAssign.class_id == class_id,
            ClassAssign.approval_status == ApprovalStatus.APPROVED,
            or_(
                ClassAssign.payment_status == PaymentStatus.PAID,
                ClassAssign.payment_waived.is_(True),
            ),
        )
        try:
            return query.count()
        except SQLAlchemyError as e:
            self.logger.error("Failed to count roster for class %s: %s", class_id, e)
            raise RepositoryException(f"Failed to count roster: {e}") from e
