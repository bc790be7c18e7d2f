# backend/tutorflow/services/reschedule_service.py
"""
Reschedule Service

Two-party negotiation over moving one lesson. Either the tutor or an
approved student proposes; the other side accepts or rejects. Acceptance
re-checks the new window under the tutor lock before moving the entry.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import ApprovalStatus, ClassStatus, LessonStatus, RescheduleStatus
from ..core.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    NotFoundException,
    RescheduleConflictException,
    StateTransitionException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc
from ..events import EventPublisher, RescheduleAccepted, RescheduleRejected, RescheduleRequested
from ..models.lesson import Lesson
from ..models.reschedule import RescheduleRequest
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .conflict_checker import ConflictChecker

logger = logging.getLogger(__name__)


class RescheduleService(BaseService):
    def __init__(self, db: Session, conflict_checker: Optional[ConflictChecker] = None):
        super().__init__(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.reschedule_repository = RepositoryFactory.create_reschedule_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.assign_repository = RepositoryFactory.create_class_assign_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    def get_request(self, request_id: str) -> RescheduleRequest:
        request = self.reschedule_repository.get_by_id(request_id)
        if request is None:
            raise NotFoundException(f"Reschedule request {request_id} not found")
        return request

    def list_pending_for_user(self, user_id: str) -> List[RescheduleRequest]:
        return self.reschedule_repository.list_pending_for_user(user_id)

    @BaseService.measure_operation("propose_reschedule")
    def propose(
        self,
        lesson_id: str,
        requester_id: str,
        new_start: datetime,
        new_end: datetime,
        reason: Optional[str] = None,
    ) -> RescheduleRequest:
        """
        Open a pending request to move ``lesson_id`` to [new_start, new_end).

        Raises:
            ValidationException: malformed or past window
            ScheduleConflictException: the new window collides with another entry
            RescheduleConflictException: the lesson already has a pending request
        """
        new_start, new_end = ensure_utc(new_start), ensure_utc(new_end)
        self.conflict_checker.validate_window(new_start, new_end)
        if new_start < self.now():
            raise ValidationException(
                "Cannot reschedule a lesson into the past",
                details={"new_start": new_start.isoformat()},
            )

        with self.transaction():
            lesson = self._load_lesson(lesson_id)
            tutor_id = lesson.tutor_class.tutor_id
            self._ensure_party(lesson, requester_id)
            entry = lesson.schedule_entry
            if entry is None or entry.deleted_at is not None:
                raise BusinessRuleException(f"Lesson {lesson_id} has no live schedule entry")

            existing = self.reschedule_repository.find_pending_for_lesson(lesson_id)
            if existing is not None:
                raise RescheduleConflictException(lesson_id, existing.id)

            self.conflict_checker.assert_free(
                tutor_id, new_start, new_end, ignore_entry_id=entry.id, source="reschedule"
            )
            request = self.reschedule_repository.create_pending(
                lesson_id=lesson_id,
                schedule_entry_id=entry.id,
                requester_id=requester_id,
                old_start_at=entry.start_at,
                old_end_at=entry.end_at,
                new_start_at=new_start,
                new_end_at=new_end,
                reason=reason,
                created_at=self.now(),
            )
            if request is None:
                raise RescheduleConflictException(lesson_id)
            self.publisher.publish(
                RescheduleRequested(
                    reschedule_request_id=request.id,
                    lesson_id=lesson_id,
                    requester_id=requester_id,
                    new_start_at=new_start,
                    new_end_at=new_end,
                )
            )

        logger.info("Reschedule %s proposed for lesson %s by %s", request.id, lesson_id, requester_id)
        return request

    @BaseService.measure_operation("accept_reschedule")
    def accept(self, request_id: str, responder_id: str) -> RescheduleRequest:
        """
        Apply the proposed window to the lesson's entry.

        A collision raises ScheduleConflictException and the request stays
        pending, so the parties can still reject it or try again later.
        """
        request = self.get_request(request_id)
        lesson = self._load_lesson(request.lesson_id)
        tutor_id = lesson.tutor_class.tutor_id

        with self.conflict_checker.tutor_guard(tutor_id):
            with self.transaction():
                request = self._lock_pending(request_id)
                lesson = self._load_lesson(request.lesson_id)
                self._ensure_responder(lesson, request, responder_id)
                if lesson.status != LessonStatus.SCHEDULED:
                    raise BusinessRuleException(
                        f"Lesson {lesson.id} is {LessonStatus(lesson.status).value} and cannot be moved"
                    )
                entry = lesson.schedule_entry
                if entry is None or entry.deleted_at is not None:
                    raise BusinessRuleException(f"Lesson {lesson.id} has no live schedule entry")

                self.conflict_checker.lock_tutor(tutor_id)
                self.conflict_checker.assert_free(
                    tutor_id,
                    request.new_start_at,
                    request.new_end_at,
                    ignore_entry_id=entry.id,
                    source="reschedule",
                )
                now = self.now()
                entry.start_at = request.new_start_at
                entry.end_at = request.new_end_at
                request.status = RescheduleStatus.ACCEPTED
                request.responder_id = responder_id
                request.responded_at = now
                self.reschedule_repository.flush()
                self.publisher.publish(
                    RescheduleAccepted(
                        reschedule_request_id=request.id,
                        lesson_id=lesson.id,
                        responder_id=responder_id,
                        new_start_at=request.new_start_at,
                        new_end_at=request.new_end_at,
                    )
                )

        logger.info("Reschedule %s accepted by %s", request_id, responder_id)
        return request

    @BaseService.measure_operation("reject_reschedule")
    def reject(self, request_id: str, responder_id: str) -> RescheduleRequest:
        with self.transaction():
            request = self._lock_pending(request_id)
            lesson = self._load_lesson(request.lesson_id)
            self._ensure_responder(lesson, request, responder_id)
            request.status = RescheduleStatus.REJECTED
            request.responder_id = responder_id
            request.responded_at = self.now()
            self.reschedule_repository.flush()
            self.publisher.publish(
                RescheduleRejected(
                    reschedule_request_id=request.id,
                    lesson_id=lesson.id,
                    responder_id=responder_id,
                )
            )
        logger.info("Reschedule %s rejected by %s", request_id, responder_id)
        return request

    # --------------------------------------------------------------- helpers
    def _load_lesson(self, lesson_id: str) -> Lesson:
        lesson = self.lesson_repository.get_with_entry(lesson_id)
        if lesson is None:
            raise NotFoundException(f"Lesson {lesson_id} not found")
        return lesson

    def _lock_pending(self, request_id: str) -> RescheduleRequest:
        request = self.reschedule_repository.get_for_update(request_id)
        if request is None:
            raise NotFoundException(f"Reschedule request {request_id} not found")
        if request.status != RescheduleStatus.PENDING:
            raise StateTransitionException(
                "RescheduleRequest",
                request.id,
                RescheduleStatus(request.status).value,
                "responded",
            )
        return request

    def _is_approved_student(self, class_id: str, user_id: str) -> bool:
        assign = self.assign_repository.get_for_class_student(class_id, user_id)
        return assign is not None and assign.approval_status == ApprovalStatus.APPROVED

    def _ensure_party(self, lesson: Lesson, user_id: str) -> None:
        tutor_class = lesson.tutor_class
        if ClassStatus(tutor_class.status).is_terminal:
            raise BusinessRuleException(f"Class {tutor_class.id} is {ClassStatus(tutor_class.status).value}")
        if lesson.status != LessonStatus.SCHEDULED:
            raise BusinessRuleException(
                f"Lesson {lesson.id} is {LessonStatus(lesson.status).value} and cannot be moved"
            )
        if tutor_class.tutor_id != user_id and not self._is_approved_student(tutor_class.id, user_id):
            raise ForbiddenException("Only the tutor or an approved student can reschedule this lesson")

    def _ensure_responder(self, lesson: Lesson, request: RescheduleRequest, responder_id: str) -> None:
        """The responder must be on the other side from the requester."""
        tutor_id = lesson.tutor_class.tutor_id
        if request.requester_id == tutor_id:
            allowed = responder_id != tutor_id and self._is_approved_student(lesson.class_id, responder_id)
        else:
            allowed = responder_id == tutor_id
        if not allowed:
            raise ForbiddenException("Only the other party can respond to a reschedule request")
