# backend/tutorflow/repositories/commission_repository.py
"""Commission configuration data access."""

from typing import Optional

from sqlalchemy.orm import Session

from ..models.escrow import CommissionConfig
from .base_repository import BaseRepository


class CommissionRepository(BaseRepository[CommissionConfig]):
    def __init__(self, db: Session):
        super().__init__(db, CommissionConfig)

    def get_active(self) -> Optional[CommissionConfig]:
        query = self._build_query().filter(CommissionConfig.is_active.is_(True))
        rows = self._execute_query(query.order_by(CommissionConfig.created_at.desc()).limit(1))
        return rows[0] if rows else None

    def deactivate_all(self) -> int:
        count = (
            self.db.query(CommissionConfig)
            .filter(CommissionConfig.is_active.is_(True))
            .update({CommissionConfig.is_active: False}, synchronize_session="fetch")
        )
        self.flush()
        return int(count)
