# backend/tutorflow/services/conflict_checker.py
"""
Conflict Checker Service

Validates candidate intervals against the tutor availability index and
owns per-tutor exclusivity for check-then-insert sequences:

- ``tutor_guard`` holds the cross-instance redis mutex around a unit of work
- ``lock_tutor`` takes the storage-level lock row inside the transaction

Overlap is tested on half-open intervals: touching intervals do not conflict.
"""

from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import ScheduleConflictException, TutorScheduleBusyException, ValidationException
from ..core.timezone_utils import ensure_utc
from ..core.tutor_lock import tutor_schedule_lock
from ..models.schedule import ScheduleEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..repositories.schedule_entry_repository import ScheduleEntryRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class ConflictChecker(BaseService):
    """Conflict detection over live schedule entries for one tutor at a time."""

    def __init__(self, db: Session, repository: Optional[ScheduleEntryRepository] = None):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_schedule_entry_repository(db)

    @staticmethod
    def validate_window(start: datetime, end: datetime) -> None:
        if ensure_utc(end) <= ensure_utc(start):
            raise ValidationException(
                "End time must be after start time",
                details={"start": start.isoformat(), "end": end.isoformat()},
            )

    def check_conflict(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        ignore_entry_id: Optional[str] = None,
    ) -> Optional[ScheduleEntry]:
        """Return the first live entry overlapping [start, end), or None."""
        self.validate_window(start, end)
        return self.repository.find_first_conflict(
            tutor_id, ensure_utc(start), ensure_utc(end), ignore_entry_id=ignore_entry_id
        )

    def assert_free(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        ignore_entry_id: Optional[str] = None,
        occurrence_index: Optional[int] = None,
        source: str = "schedule",
    ) -> None:
        """Raise ScheduleConflictException naming the colliding entry if the window is taken."""
        existing = self.check_conflict(tutor_id, start, end, ignore_entry_id=ignore_entry_id)
        if existing is None:
            return
        prometheus_metrics.record_schedule_conflict(source)
        logger.info(
            "Schedule conflict for tutor %s: %s-%s collides with entry %s",
            tutor_id,
            start.isoformat(),
            end.isoformat(),
            existing.id,
        )
        raise ScheduleConflictException(
            tutor_id=tutor_id,
            start=start,
            end=end,
            conflicting_entry_id=existing.id,
            conflicting_start=existing.start_at,
            conflicting_end=existing.end_at,
            occurrence_index=occurrence_index,
        )

    def list_entries(
        self,
        tutor_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[ScheduleEntry]:
        return self.repository.list_for_tutor(
            tutor_id,
            ensure_utc(window_start) if window_start else None,
            ensure_utc(window_end) if window_end else None,
        )

    def lock_tutor(self, tutor_id: str) -> int:
        """Serialize schedule writes for ``tutor_id`` until the current transaction ends."""
        return self.repository.lock_tutor_schedule(tutor_id)

    @contextmanager
    def tutor_guard(self, tutor_id: str) -> Iterator[None]:
        """
        Hold the redis mutex for ``tutor_id`` around a unit of work.

        Raises TutorScheduleBusyException when another instance holds it.
        """
        with tutor_schedule_lock(tutor_id) as acquired:
            if not acquired:
                raise TutorScheduleBusyException(tutor_id)
            yield
