# backend/tutorflow/repositories/__init__.py
"""
Repository layer: data access separated from business logic.

Usage:
    from tutorflow.repositories import RepositoryFactory

    entries = RepositoryFactory.create_schedule_entry_repository(db)
    clash = entries.find_first_conflict(tutor_id, start, end)

Repositories flush but never commit; services own the transaction.
"""

from .availability_block_repository import AvailabilityBlockRepository
from .base_repository import BaseRepository
from .class_repository import ClassAssignRepository, ClassRepository
from .class_request_repository import ClassRequestRepository, TutorApplicationRepository
from .commission_repository import CommissionRepository
from .escrow_repository import EscrowRepository, TutorDepositRepository
from .event_outbox_repository import EventOutboxRepository
from .factory import RepositoryFactory
from .lesson_repository import LessonRepository
from .payment_repository import PaymentRepository
from .reschedule_repository import RescheduleRepository
from .schedule_entry_repository import ScheduleEntryRepository
from .wallet_repository import WalletRepository

__all__ = [
    "AvailabilityBlockRepository",
    "BaseRepository",
    "ClassAssignRepository",
    "ClassRepository",
    "ClassRequestRepository",
    "CommissionRepository",
    "EscrowRepository",
    "EventOutboxRepository",
    "LessonRepository",
    "PaymentRepository",
    "RepositoryFactory",
    "RescheduleRepository",
    "ScheduleEntryRepository",
    "TutorApplicationRepository",
    "TutorDepositRepository",
    "WalletRepository",
]
