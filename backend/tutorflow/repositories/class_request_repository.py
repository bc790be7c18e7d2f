# backend/tutorflow/repositories/class_request_repository.py
"""Class request and tutor application data access."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import ApplicationStatus, ClassRequestStatus
from ..models.class_request import ClassRequest, TutorApplication
from .base_repository import BaseRepository


class ClassRequestRepository(BaseRepository[ClassRequest]):
    def __init__(self, db: Session):
        super().__init__(db, ClassRequest)

    def find_expired_pending_ids(self, now: datetime, limit: int) -> List[str]:
        query = (
            self.db.query(ClassRequest.id)
            .filter(
                ClassRequest.status == ClassRequestStatus.PENDING,
                ClassRequest.expires_at <= now,
            )
            .order_by(ClassRequest.expires_at.asc(), ClassRequest.id.asc())
            .limit(limit)
        )
        return [row[0] for row in self._execute_query(query)]

    def list_open(self, tutor_id: Optional[str] = None) -> List[ClassRequest]:
        """Pending requests visible to a tutor: open ones plus those directed at them."""
        query = self._build_query().filter(ClassRequest.status == ClassRequestStatus.PENDING)
        if tutor_id is None:
            query = query.filter(ClassRequest.tutor_id.is_(None))
        else:
            query = query.filter(
                (ClassRequest.tutor_id.is_(None)) | (ClassRequest.tutor_id == tutor_id)
            )
        return self._execute_query(query.order_by(ClassRequest.created_at.desc()))


class TutorApplicationRepository(BaseRepository[TutorApplication]):
    def __init__(self, db: Session):
        super().__init__(db, TutorApplication)

    def get_for_request_tutor(self, class_request_id: str, tutor_id: str) -> Optional[TutorApplication]:
        return self.find_one_by(class_request_id=class_request_id, tutor_id=tutor_id)

    def lock_pending_for_request(self, class_request_id: str) -> List[TutorApplication]:
        query = (
            self._build_query()
            .filter(
                TutorApplication.class_request_id == class_request_id,
                TutorApplication.status == ApplicationStatus.PENDING,
            )
            .order_by(TutorApplication.id.asc())
            .populate_existing()
            .with_for_update()
        )
        return self._execute_query(query)

    def list_for_request(self, class_request_id: str) -> List[TutorApplication]:
        query = self._build_query().filter(TutorApplication.class_request_id == class_request_id)
        return self._execute_query(query.order_by(TutorApplication.applied_at.asc()))
