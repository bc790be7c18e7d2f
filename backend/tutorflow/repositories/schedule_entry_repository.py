# backend/tutorflow/repositories/schedule_entry_repository.py
"""
ScheduleEntry Repository

Data access for the tutor availability index: overlap queries, per-tutor
serialization, and soft deletion of entries.
"""

from datetime import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.schedule import ScheduleEntry, TutorScheduleLock
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ScheduleEntryRepository(BaseRepository[ScheduleEntry]):
    def __init__(self, db: Session):
        super().__init__(db, ScheduleEntry)

    def _live_for_tutor(self, tutor_id: str):
        return self.db.query(ScheduleEntry).filter(
            ScheduleEntry.tutor_id == tutor_id,
            ScheduleEntry.deleted_at.is_(None),
        )

    def find_first_conflict(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        ignore_entry_id: Optional[str] = None,
    ) -> Optional[ScheduleEntry]:
        """
        Return the earliest live entry overlapping [start, end), if any.

        Intervals that merely touch (existing.end == start) do not overlap.
        """
        query = self._live_for_tutor(tutor_id).filter(
            ScheduleEntry.start_at < end,
            ScheduleEntry.end_at > start,
        )
        if ignore_entry_id:
            query = query.filter(ScheduleEntry.id != ignore_entry_id)
        try:
            return query.order_by(ScheduleEntry.start_at.asc(), ScheduleEntry.id.asc()).first()
        except SQLAlchemyError as e:
            self.logger.error("Conflict lookup failed for tutor %s: %s", tutor_id, e)
            raise RepositoryException(f"Failed to check schedule conflicts: {e}") from e

    def list_for_tutor(
        self,
        tutor_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[ScheduleEntry]:
        """Live entries for a tutor, optionally limited to those overlapping a window."""
        query = self._live_for_tutor(tutor_id)
        if window_end is not None:
            query = query.filter(ScheduleEntry.start_at < window_end)
        if window_start is not None:
            query = query.filter(ScheduleEntry.end_at > window_start)
        return self._execute_query(query.order_by(ScheduleEntry.start_at.asc()))

    def soft_delete_for_lessons(self, lesson_ids: Iterable[str], at: datetime) -> int:
        ids = list(lesson_ids)
        if not ids:
            return 0
        try:
            count = (
                self.db.query(ScheduleEntry)
                .filter(ScheduleEntry.lesson_id.in_(ids), ScheduleEntry.deleted_at.is_(None))
                .update({ScheduleEntry.deleted_at: at}, synchronize_session="fetch")
            )
            self.db.flush()
            return int(count)
        except SQLAlchemyError as e:
            self.logger.error("Failed to release lesson entries: %s", e)
            raise RepositoryException(f"Failed to delete schedule entries: {e}") from e

    def soft_delete_for_block(self, block_id: str, at: datetime) -> int:
        try:
            count = (
                self.db.query(ScheduleEntry)
                .filter(ScheduleEntry.block_id == block_id, ScheduleEntry.deleted_at.is_(None))
                .update({ScheduleEntry.deleted_at: at}, synchronize_session="fetch")
            )
            self.db.flush()
            return int(count)
        except SQLAlchemyError as e:
            self.logger.error("Failed to release block %s entries: %s", block_id, e)
            raise RepositoryException(f"Failed to delete schedule entries: {e}") from e

    # Per-tutor serialization

    def lock_tutor_schedule(self, tutor_id: str) -> int:
        """
        Take the tutor's schedule lock for the rest of the current transaction.

        The lock row is created on first use. Bumping its version is a write,
        so backends without FOR UPDATE (SQLite) still serialize on it.
        Returns the new lock version.
        """
        lock = self._select_lock(tutor_id)
        if lock is None:
            try:
                with self.db.begin_nested():
                    self.db.add(TutorScheduleLock(tutor_id=tutor_id, version=0))
            except IntegrityError:
                logger.debug("Schedule lock row for tutor %s created concurrently", tutor_id)
            lock = self._select_lock(tutor_id)
            if lock is None:
                raise RepositoryException(f"Schedule lock for tutor {tutor_id} could not be created")
        lock.version = (lock.version or 0) + 1
        self.flush()
        return int(lock.version)

    def _select_lock(self, tutor_id: str) -> Optional[TutorScheduleLock]:
        try:
            return (
                self.db.query(TutorScheduleLock)
                .filter(TutorScheduleLock.tutor_id == tutor_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error("Failed to lock schedule for tutor %s: %s", tutor_id, e)
            raise RepositoryException(f"Failed to lock tutor schedule: {e}") from e
