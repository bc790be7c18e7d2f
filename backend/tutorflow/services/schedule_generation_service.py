# backend/tutorflow/services/schedule_generation_service.py
"""
Lesson and ScheduleEntry generation.

Expands a class's weekly rules, conflict-checks every occurrence against the
tutor's calendar under the tutor lock, and writes one Lesson plus one LESSON
ScheduleEntry per occurrence. A batch is all-or-nothing: the first colliding
occurrence aborts it and none of its rows survive.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime
import logging
from typing import List, Optional, Sequence

import pytz
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import LessonStatus, ScheduleEntryType
from ..core.exceptions import NotFoundException, ValidationException
from ..core.timezone_utils import get_schedule_timezone
from ..models.lesson import Lesson
from ..models.schedule import ScheduleEntry
from ..repositories import RepositoryFactory
from .base import BaseService
from .conflict_checker import ConflictChecker
from .recurring_rule_expander import HorizonPolicy, Occurrence, RecurringRule, expand_rules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedLesson:
    lesson_id: str
    schedule_entry_id: str
    start_at: datetime
    end_at: datetime


def default_horizon() -> HorizonPolicy:
    return HorizonPolicy(
        occurrences_per_rule=settings.schedule_occurrences_per_rule,
        window_days=settings.schedule_horizon_days,
    )


def lesson_title(local_day: date) -> str:
    return f"Lesson {local_day.strftime('%d/%m/%Y')}"


class ScheduleGenerationService(BaseService):
    def __init__(
        self,
        db: Session,
        conflict_checker: Optional[ConflictChecker] = None,
        horizon: Optional[HorizonPolicy] = None,
        tz: Optional[pytz.BaseTzInfo] = None,
    ):
        super().__init__(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.class_repository = RepositoryFactory.create_class_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.entry_repository = RepositoryFactory.create_schedule_entry_repository(db)
        self.horizon = horizon or default_horizon()
        self.tz = tz or get_schedule_timezone()

    def preview(self, rules: Sequence[RecurringRule], start_date: date) -> List[Occurrence]:
        """Occurrences a generation would attempt, without touching storage."""
        return expand_rules(rules, start_date, self.horizon, self.tz)

    @BaseService.measure_operation("generate_schedule")
    def generate(
        self,
        class_id: str,
        tutor_id: str,
        start_date: date,
        rules: Sequence[RecurringRule],
        *,
        use_transaction: bool = True,
    ) -> List[GeneratedLesson]:
        """
        Materialize lessons for ``class_id`` from ``rules``.

        Raises:
            ValidationException: malformed rules, or tutor_id is not the class tutor
            ScheduleConflictException: first occurrence colliding with a live entry
        """
        occurrences = self.preview(rules, start_date)

        guard = self.conflict_checker.tutor_guard(tutor_id) if use_transaction else nullcontext()
        with guard:
            with self.maybe_transaction(use_transaction):
                # Savepoint so a caller-owned transaction also loses the whole batch.
                with self.db.begin_nested():
                    return self._generate_locked(class_id, tutor_id, occurrences)

    def _generate_locked(
        self, class_id: str, tutor_id: str, occurrences: List[Occurrence]
    ) -> List[GeneratedLesson]:
        tutor_class = self.class_repository.get_by_id(class_id)
        if tutor_class is None:
            raise NotFoundException(f"Class {class_id} not found")
        if tutor_class.tutor_id != tutor_id:
            raise ValidationException(
                "Lessons must be scheduled on the class tutor's calendar",
                details={"class_id": class_id, "tutor_id": tutor_id},
            )

        self.conflict_checker.lock_tutor(tutor_id)
        sequence = self.lesson_repository.max_sequence(class_id)
        generated: List[GeneratedLesson] = []
        for index, occurrence in enumerate(occurrences):
            self.conflict_checker.assert_free(
                tutor_id,
                occurrence.start_at,
                occurrence.end_at,
                occurrence_index=index,
                source="generation",
            )
            sequence += 1
            lesson = Lesson(
                class_id=class_id,
                sequence=sequence,
                title=lesson_title(occurrence.local_date),
                status=LessonStatus.SCHEDULED,
            )
            self.lesson_repository.add_all([lesson])
            entry = ScheduleEntry(
                tutor_id=tutor_id,
                start_at=occurrence.start_at,
                end_at=occurrence.end_at,
                entry_type=ScheduleEntryType.LESSON,
                lesson_id=lesson.id,
            )
            # Flush each entry so the next occurrence is checked against it.
            self.entry_repository.add_all([entry])
            generated.append(
                GeneratedLesson(lesson.id, entry.id, occurrence.start_at, occurrence.end_at)
            )

        logger.info(
            "Generated %d lessons for class %s (tutor %s)", len(generated), class_id, tutor_id
        )
        return generated
