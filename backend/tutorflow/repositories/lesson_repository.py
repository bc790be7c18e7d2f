# backend/tutorflow/repositories/lesson_repository.py
"""Lesson data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from ..core.enums import LessonStatus
from ..models.lesson import Lesson
from ..models.schedule import ScheduleEntry
from .base_repository import BaseRepository


class LessonRepository(BaseRepository[Lesson]):
    def __init__(self, db: Session):
        super().__init__(db, Lesson)

    def get_with_entry(self, lesson_id: str) -> Optional[Lesson]:
        query = (
            self._build_query()
            .options(joinedload(Lesson.schedule_entry), joinedload(Lesson.tutor_class))
            .filter(Lesson.id == lesson_id)
        )
        rows = self._execute_query(query)
        return rows[0] if rows else None

    def list_for_class(self, class_id: str) -> List[Lesson]:
        query = (
            self._build_query()
            .options(joinedload(Lesson.schedule_entry))
            .filter(Lesson.class_id == class_id)
            .order_by(Lesson.sequence.asc())
        )
        return self._execute_query(query)

    def max_sequence(self, class_id: str) -> int:
        rows = self.list_for_class(class_id)
        return max((lesson.sequence for lesson in rows), default=0)

    def find_due_for_completion(self, now: datetime, limit: int) -> List[Lesson]:
        """Scheduled lessons whose live entry has already ended."""
        query = (
            self._build_query()
            .join(ScheduleEntry, ScheduleEntry.lesson_id == Lesson.id)
            .filter(
                Lesson.status == LessonStatus.SCHEDULED,
                ScheduleEntry.deleted_at.is_(None),
                ScheduleEntry.end_at <= now,
            )
            .order_by(ScheduleEntry.end_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)
