# backend/tutorflow/repositories/escrow_repository.py
"""Escrow and tutor deposit data access."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import EscrowStatus, TutorDepositStatus
from ..models.escrow import Escrow, TutorDeposit
from .base_repository import BaseRepository


class EscrowRepository(BaseRepository[Escrow]):
    def __init__(self, db: Session):
        super().__init__(db, Escrow)

    def find_held_for_assign(self, class_assign_id: str) -> Optional[Escrow]:
        return self.find_one_by(class_assign_id=class_assign_id, status=EscrowStatus.HELD)

    def lock_held_for_class(self, class_id: str) -> List[Escrow]:
        """Held escrows of a class, locked and in a stable order."""
        query = (
            self._build_query()
            .filter(Escrow.class_id == class_id, Escrow.status == EscrowStatus.HELD)
            .order_by(Escrow.id.asc())
            .populate_existing()
            .with_for_update()
        )
        return self._execute_query(query)

    def list_for_class(self, class_id: str) -> List[Escrow]:
        query = self._build_query().filter(Escrow.class_id == class_id)
        return self._execute_query(query.order_by(Escrow.created_at.asc()))


class TutorDepositRepository(BaseRepository[TutorDeposit]):
    def __init__(self, db: Session):
        super().__init__(db, TutorDeposit)

    def find_held_for_class(self, class_id: str) -> Optional[TutorDeposit]:
        return self.find_one_by(class_id=class_id, status=TutorDepositStatus.HELD)

    def lock_held_for_class(self, class_id: str) -> Optional[TutorDeposit]:
        query = (
            self._build_query()
            .filter(TutorDeposit.class_id == class_id, TutorDeposit.status == TutorDepositStatus.HELD)
            .populate_existing()
            .with_for_update()
        )
        deposits = self._execute_query(query)
        return deposits[0] if deposits else None

    def list_for_class(self, class_id: str) -> List[TutorDeposit]:
        query = self._build_query().filter(TutorDeposit.class_id == class_id)
        return self._execute_query(query.order_by(TutorDeposit.created_at.asc(), TutorDeposit.id.asc()))
