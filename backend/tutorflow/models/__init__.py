# backend/tutorflow/models/__init__.py
"""
SQLAlchemy models. Importing this package registers every table on Base.metadata.
"""

from .class_request import ClassRequest, TutorApplication
from .escrow import CommissionConfig, Escrow, TutorDeposit
from .event_outbox import EventOutbox, EventOutboxStatus
from .lesson import Lesson
from .payment import GatewayPayment
from .reschedule import RescheduleRequest
from .schedule import AvailabilityBlock, RecurringScheduleRule, ScheduleEntry, TutorScheduleLock
from .tutor_class import ClassAssign, TutorClass
from .wallet import Transaction, Wallet

__all__ = [
    "AvailabilityBlock",
    "ClassAssign",
    "ClassRequest",
    "CommissionConfig",
    "Escrow",
    "EventOutbox",
    "EventOutboxStatus",
    "GatewayPayment",
    "Lesson",
    "RecurringScheduleRule",
    "RescheduleRequest",
    "ScheduleEntry",
    "Transaction",
    "TutorApplication",
    "TutorClass",
    "TutorDeposit",
    "TutorScheduleLock",
    "Wallet",
]
