# backend/tutorflow/repositories/reschedule_repository.py
"""Reschedule request data access."""

from datetime import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.enums import ApprovalStatus, RescheduleStatus
from ..models.lesson import Lesson
from ..models.reschedule import RescheduleRequest
from ..models.tutor_class import ClassAssign, TutorClass
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class RescheduleRepository(BaseRepository[RescheduleRequest]):
    def __init__(self, db: Session):
        super().__init__(db, RescheduleRequest)

    def find_pending_for_lesson(self, lesson_id: str) -> Optional[RescheduleRequest]:
        return self.find_one_by(lesson_id=lesson_id, status=RescheduleStatus.PENDING)

    def create_pending(self, **kwargs) -> Optional[RescheduleRequest]:
        """
        Insert a pending request inside a savepoint.

        Returns None when the one-pending-per-lesson index rejects the row,
        leaving the surrounding transaction usable.
        """
        request = RescheduleRequest(status=RescheduleStatus.PENDING, **kwargs)
        try:
            with self.db.begin_nested():
                self.db.add(request)
        except IntegrityError:
            logger.info("Concurrent pending reschedule for lesson %s", kwargs.get("lesson_id"))
            return None
        return request

    def reject_pending_for_lessons(self, lesson_ids: Iterable[str], at: datetime) -> int:
        ids = list(lesson_ids)
        if not ids:
            return 0
        count = (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.lesson_id.in_(ids),
                RescheduleRequest.status == RescheduleStatus.PENDING,
            )
            .update(
                {RescheduleRequest.status: RescheduleStatus.REJECTED, RescheduleRequest.responded_at: at},
                synchronize_session="fetch",
            )
        )
        self.flush()
        return int(count)

    def list_pending_for_user(self, user_id: str) -> List[RescheduleRequest]:
        """Pending requests on lessons the user teaches or attends."""
        enrolled_class_ids = select(ClassAssign.class_id).where(
            ClassAssign.student_id == user_id,
            ClassAssign.approval_status == ApprovalStatus.APPROVED,
        )
        query = (
            self._build_query()
            .join(Lesson, Lesson.id == RescheduleRequest.lesson_id)
            .join(TutorClass, TutorClass.id == Lesson.class_id)
            .filter(
                RescheduleRequest.status == RescheduleStatus.PENDING,
                or_(TutorClass.tutor_id == user_id, TutorClass.id.in_(enrolled_class_ids)),
            )
            .order_by(RescheduleRequest.created_at.asc())
        )
        return self._execute_query(query)
