# backend/tutorflow/services/availability_block_service.py
"""
Tutor availability blocks.

A block marks recurring personal time as unavailable. Its occurrences are
written to the availability index as BLOCK entries so lesson generation and
reschedules see them like any other commitment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.enums import ScheduleEntryType
from ..core.exceptions import ForbiddenException, NotFoundException, ValidationException
from ..core.timezone_utils import get_schedule_timezone
from ..models.schedule import AvailabilityBlock, ScheduleEntry
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .conflict_checker import ConflictChecker
from .recurring_rule_expander import HorizonPolicy, RecurringRule, expand_rules

logger = logging.getLogger(__name__)


@dataclass
class BlockCreationResult:
    block: AvailabilityBlock
    entry_ids: List[str] = field(default_factory=list)


class AvailabilityBlockService(BaseService):
    def __init__(self, db: Session, conflict_checker: Optional[ConflictChecker] = None, tz=None):
        super().__init__(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.block_repository = RepositoryFactory.create_availability_block_repository(db)
        self.entry_repository = RepositoryFactory.create_schedule_entry_repository(db)
        self.tz = tz or get_schedule_timezone()

    def list_blocks(self, tutor_id: str) -> List[AvailabilityBlock]:
        return self.block_repository.list_live_for_tutor(tutor_id)

    def list_tutor_schedule(
        self,
        tutor_id: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[ScheduleEntry]:
        """Every live commitment (lessons and blocks) for the tutor, by start time."""
        return self.conflict_checker.list_entries(tutor_id, window_start, window_end)

    @BaseService.measure_operation("create_availability_block")
    def create_block(
        self,
        tutor_id: str,
        title: str,
        rules: Sequence[RecurringRule],
        start_date: date,
        until_date: date,
        notes: Optional[str] = None,
    ) -> BlockCreationResult:
        """
        Block recurring time from ``start_date`` through ``until_date``.

        All occurrences are written or none: one collision rejects the block.
        """
        if not title or not title.strip():
            raise ValidationException("Block title is required")
        occurrences = self._expand(rules, start_date, until_date)

        with self.conflict_checker.tutor_guard(tutor_id):
            with self.transaction():
                self.conflict_checker.lock_tutor(tutor_id)
                block = self.block_repository.create(
                    tutor_id=tutor_id,
                    title=title.strip(),
                    notes=notes,
                    rules=[rule.to_dict() for rule in rules],
                    start_date=start_date,
                    until_date=until_date,
                    created_at=self.now(),
                )
                entry_ids = self._write_entries(block, occurrences)

        logger.info("Availability block %s for tutor %s: %d entries", block.id, tutor_id, len(entry_ids))
        return BlockCreationResult(block=block, entry_ids=entry_ids)

    @BaseService.measure_operation("delete_availability_block")
    def delete_block(self, block_id: str, tutor_id: str) -> AvailabilityBlock:
        """Soft-delete a block and free its slots. Deleting twice is a no-op."""
        with self.transaction():
            block = self.block_repository.get_for_update(block_id)
            if block is None:
                raise NotFoundException(f"Availability block {block_id} not found")
            if block.tutor_id != tutor_id:
                raise ForbiddenException("Only the owning tutor can delete a block")
            if block.deleted_at is None:
                now = self.now()
                block.deleted_at = now
                released = self.entry_repository.soft_delete_for_block(block_id, now)
                logger.info("Availability block %s deleted, %d entries released", block_id, released)
        return block

    @BaseService.measure_operation("update_availability_block")
    def update_block(
        self,
        block_id: str,
        tutor_id: str,
        *,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        rules: Optional[Sequence[RecurringRule]] = None,
        start_date: Optional[date] = None,
        until_date: Optional[date] = None,
    ) -> BlockCreationResult:
        """
        Edit a live block. Changing its rules or dates rewrites its entries.

        The old slots are released and the new ones checked in the same unit
        of work, so a collision leaves the block as it was.
        """
        if title is not None and not title.strip():
            raise ValidationException("Block title is required")

        with self.conflict_checker.tutor_guard(tutor_id):
            with self.transaction():
                self.conflict_checker.lock_tutor(tutor_id)
                block = self.block_repository.get_for_update(block_id)
                if block is None or block.deleted_at is not None:
                    raise NotFoundException(f"Availability block {block_id} not found")
                if block.tutor_id != tutor_id:
                    raise ForbiddenException("Only the owning tutor can edit a block")

                if title is not None:
                    block.title = title.strip()
                if notes is not None:
                    block.notes = notes

                reschedule = rules is not None or start_date is not None or until_date is not None
                if not reschedule:
                    self.block_repository.flush()
                    entry_ids = [entry.id for entry in self._live_entries(block)]
                else:
                    new_rules = (
                        list(rules) if rules is not None else [RecurringRule.from_dict(r) for r in block.rules]
                    )
                    new_start = start_date or block.start_date
                    new_until = until_date or block.until_date
                    occurrences = self._expand(new_rules, new_start, new_until)
                    released = self.entry_repository.soft_delete_for_block(block.id, self.now())
                    block.rules = [rule.to_dict() for rule in new_rules]
                    block.start_date = new_start
                    block.until_date = new_until
                    self.block_repository.flush()
                    entry_ids = self._write_entries(block, occurrences)
                    logger.info(
                        "Availability block %s rewritten: %d entries released, %d written",
                        block_id,
                        released,
                        len(entry_ids),
                    )
        return BlockCreationResult(block=block, entry_ids=entry_ids)

    def _expand(self, rules: Sequence[RecurringRule], start_date: date, until_date: date):
        if until_date < start_date:
            raise ValidationException(
                "Block must end on or after its start date",
                details={"start_date": start_date.isoformat(), "until_date": until_date.isoformat()},
            )
        occurrences = expand_rules(rules, start_date, HorizonPolicy.until(until_date), self.tz)
        if not occurrences:
            raise ValidationException("Block rules produce no occurrences in the given range")
        return occurrences

    def _write_entries(self, block: AvailabilityBlock, occurrences) -> List[str]:
        entry_ids: List[str] = []
        for index, occurrence in enumerate(occurrences):
            self.conflict_checker.assert_free(
                block.tutor_id,
                occurrence.start_at,
                occurrence.end_at,
                occurrence_index=index,
                source="block",
            )
            entry = ScheduleEntry(
                tutor_id=block.tutor_id,
                start_at=occurrence.start_at,
                end_at=occurrence.end_at,
                entry_type=ScheduleEntryType.BLOCK,
                block_id=block.id,
            )
            self.entry_repository.add_all([entry])
            entry_ids.append(entry.id)
        return entry_ids

    def _live_entries(self, block: AvailabilityBlock) -> List[ScheduleEntry]:
        return [
            entry
            for entry in self.conflict_checker.list_entries(block.tutor_id)
            if entry.block_id == block.id
        ]
