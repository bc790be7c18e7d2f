# backend/tutorflow/repositories/factory.py
"""
Repository Factory

Centralized creation of repository instances so services share one
initialization path and tests can swap implementations.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .availability_block_repository import AvailabilityBlockRepository
    from .class_repository import ClassAssignRepository, ClassRepository
    from .class_request_repository import ClassRequestRepository, TutorApplicationRepository
    from .commission_repository import CommissionRepository
    from .escrow_repository import EscrowRepository, TutorDepositRepository
    from .event_outbox_repository import EventOutboxRepository
    from .lesson_repository import LessonRepository
    from .payment_repository import PaymentRepository
    from .reschedule_repository import RescheduleRepository
    from .schedule_entry_repository import ScheduleEntryRepository
    from .wallet_repository import WalletRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_schedule_entry_repository(db: Session) -> "ScheduleEntryRepository":
        """Create repository for the tutor availability index."""
        from .schedule_entry_repository import ScheduleEntryRepository

        return ScheduleEntryRepository(db)

    @staticmethod
    def create_availability_block_repository(db: Session) -> "AvailabilityBlockRepository":
        from .availability_block_repository import AvailabilityBlockRepository

        return AvailabilityBlockRepository(db)

    @staticmethod
    def create_class_repository(db: Session) -> "ClassRepository":
        from .class_repository import ClassRepository

        return ClassRepository(db)

    @staticmethod
    def create_class_assign_repository(db: Session) -> "ClassAssignRepository":
        from .class_repository import ClassAssignRepository

        return ClassAssignRepository(db)

    @staticmethod
    def create_lesson_repository(db: Session) -> "LessonRepository":
        from .lesson_repository import LessonRepository

        return LessonRepository(db)

    @staticmethod
    def create_class_request_repository(db: Session) -> "ClassRequestRepository":
        from .class_request_repository import ClassRequestRepository

        return ClassRequestRepository(db)

    @staticmethod
    def create_tutor_application_repository(db: Session) -> "TutorApplicationRepository":
        from .class_request_repository import TutorApplicationRepository

        return TutorApplicationRepository(db)

    @staticmethod
    def create_wallet_repository(db: Session) -> "WalletRepository":
        """Create repository for wallets and ledger rows."""
        from .wallet_repository import WalletRepository

        return WalletRepository(db)

    @staticmethod
    def create_commission_repository(db: Session) -> "CommissionRepository":
        from .commission_repository import CommissionRepository

        return CommissionRepository(db)

    @staticmethod
    def create_escrow_repository(db: Session) -> "EscrowRepository":
        from .escrow_repository import EscrowRepository

        return EscrowRepository(db)

    @staticmethod
    def create_tutor_deposit_repository(db: Session) -> "TutorDepositRepository":
        from .escrow_repository import TutorDepositRepository

        return TutorDepositRepository(db)

    @staticmethod
    def create_reschedule_repository(db: Session) -> "RescheduleRepository":
        from .reschedule_repository import RescheduleRepository

        return RescheduleRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> "EventOutboxRepository":
        """Create repository for the lifecycle event outbox."""
        from .event_outbox_repository import EventOutboxRepository

        return EventOutboxRepository(db)
