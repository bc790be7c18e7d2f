# backend/tutorflow/repositories/availability_block_repository.py
"""Availability block data access."""

from typing import List

from sqlalchemy.orm import Session

from ..models.schedule import AvailabilityBlock
from .base_repository import BaseRepository


class AvailabilityBlockRepository(BaseRepository[AvailabilityBlock]):
    def __init__(self, db: Session):
        super().__init__(db, AvailabilityBlock)

    def list_live_for_tutor(self, tutor_id: str) -> List[AvailabilityBlock]:
        query = self._build_query().filter(
            AvailabilityBlock.tutor_id == tutor_id,
            AvailabilityBlock.deleted_at.is_(None),
        )
        return self._execute_query(query.order_by(AvailabilityBlock.start_date.asc()))
