# backend/tutorflow/repositories/payment_repository.py
"""Gateway payment data access."""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import GatewayPaymentStatus
from ..models.payment import GatewayPayment
from .base_repository import BaseRepository


class PaymentRepository(BaseRepository[GatewayPayment]):
    def __init__(self, db: Session):
        super().__init__(db, GatewayPayment)

    def get_by_context_id(self, context_id: str) -> Optional[GatewayPayment]:
        return self.find_one_by(context_id=context_id)

    def lock_by_context_id(self, context_id: str) -> Optional[GatewayPayment]:
        query = (
            self._build_query()
            .filter(GatewayPayment.context_id == context_id)
            .populate_existing()
            .with_for_update()
        )
        rows = self._execute_query(query)
        return rows[0] if rows else None

    def find_unsubmitted(self, max_attempts: int, limit: int) -> List[GatewayPayment]:
        """Pending rows the gateway never accepted, still under the attempt cap."""
        query = (
            self._build_query()
            .filter(
                GatewayPayment.status == GatewayPaymentStatus.PENDING,
                GatewayPayment.attempt_count < max_attempts,
            )
            .order_by(GatewayPayment.created_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)
