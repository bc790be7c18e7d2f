# backend/tutorflow/services/class_status_service.py
"""
Time-driven class lifecycle sweep.

Run periodically from the task queue. Each item is handled in its own
savepoint: a failing class is logged and counted while the rest of the
batch commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import CancellationReason, ClassStatus, LessonStatus
from ..core.exceptions import DomainException, RepositoryException
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .class_service import ClassService

logger = logging.getLogger(__name__)


@dataclass
class StatusSweepResult:
    lessons_completed: int = 0
    classes_started: int = 0
    classes_completed: int = 0
    classes_cancelled_unpaid: int = 0
    classes_awaiting_deposit: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)


class ClassStatusService(BaseService):
    SWEEP = "advance_class_statuses"

    def __init__(self, db: Session, class_service: Optional[ClassService] = None):
        super().__init__(db)
        self.class_service = class_service or ClassService(db)
        self.class_repository = RepositoryFactory.create_class_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)

    def advance_class_statuses(
        self, now: Optional[datetime] = None, batch_size: Optional[int] = None
    ) -> StatusSweepResult:
        """
        Apply time-based transitions as of ``now``:

        1. Scheduled lessons whose slot has ended become Completed.
        2. ACTIVE classes whose first lesson has begun become ONGOING.
           A class still waiting on its tutor's deposit is skipped.
        3. Classes with no lesson left to teach become COMPLETED and their
           escrows are released to the tutor.
        4. Request-born classes still unpaid after the grace window are
           cancelled as a student fault.
        """
        cutoff = now or self.now()
        limit = batch_size or settings.sweep_batch_size
        result = StatusSweepResult()

        with self.measure_operation_context(self.SWEEP):
            with self.transaction():
                for lesson in self.lesson_repository.find_due_for_completion(cutoff, limit):
                    if self._run_item(lesson.id, result, lambda lesson=lesson: self._complete_lesson(lesson, cutoff)):
                        result.lessons_completed += 1

                for class_id in self.class_repository.find_active_with_started_lessons(cutoff, limit):
                    if self._awaiting_deposit(class_id):
                        result.classes_awaiting_deposit += 1
                        continue
                    if self._run_item(
                        class_id,
                        result,
                        lambda class_id=class_id: self.class_service.start_class(class_id, use_transaction=False),
                    ):
                        result.classes_started += 1

                for class_id in self.class_repository.find_with_all_lessons_finished(limit):
                    if self._run_item(
                        class_id,
                        result,
                        lambda class_id=class_id: self.class_service.complete_class(class_id, use_transaction=False),
                    ):
                        result.classes_completed += 1

                unpaid_before = cutoff - timedelta(hours=settings.unpaid_class_cancel_hours)
                for class_id in self.class_repository.find_unpaid_request_classes(unpaid_before, limit):
                    if self._run_item(
                        class_id,
                        result,
                        lambda class_id=class_id: self.class_service.cancel_class(
                            class_id, CancellationReason.STUDENT_FAULT, use_transaction=False
                        ),
                    ):
                        result.classes_cancelled_unpaid += 1

        logger.info(
            "Status sweep: %d lessons completed, %d classes started, %d awaiting deposit, "
            "%d completed, %d cancelled unpaid, %d failed",
            result.lessons_completed,
            result.classes_started,
            result.classes_awaiting_deposit,
            result.classes_completed,
            result.classes_cancelled_unpaid,
            result.failed,
        )
        return result

    def _run_item(self, item_id: str, result: StatusSweepResult, action: Callable[[], object]) -> bool:
        try:
            with self.db.begin_nested():
                action()
        except (DomainException, RepositoryException, SQLAlchemyError) as exc:
            result.failed += 1
            result.failed_ids.append(item_id)
            prometheus_metrics.record_sweep_item(self.SWEEP, "failed")
            logger.error("Status sweep failed for %s: %s", item_id, exc)
            return False
        prometheus_metrics.record_sweep_item(self.SWEEP, "advanced")
        return True

    def _awaiting_deposit(self, class_id: str) -> bool:
        tutor_class = self.class_repository.get_by_id(class_id)
        if tutor_class is None or not self.class_service.awaiting_deposit(tutor_class):
            return False
        prometheus_metrics.record_sweep_item(self.SWEEP, "skipped")
        logger.warning("Class %s has started lessons but no tutor deposit held", class_id)
        return True

    def _complete_lesson(self, lesson, at: datetime) -> None:
        if lesson.status != LessonStatus.SCHEDULED:
            return
        tutor_class = lesson.tutor_class
        if tutor_class is not None and ClassStatus(tutor_class.status).is_terminal:
            return
        lesson.status = LessonStatus.COMPLETED
        lesson.completed_at = at
        self.lesson_repository.flush()
