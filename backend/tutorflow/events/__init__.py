"""Domain events and the outbox publisher."""
from .class_events import (
    ApplicationSubmitted,
    ClassCancelled,
    ClassCreated,
    ClassScheduleUpdated,
    EnrollmentWithdrawn,
    EscrowPaid,
    EscrowRefunded,
    EscrowReleased,
    RequestAccepted,
    RescheduleAccepted,
    RescheduleRejected,
    RescheduleRequested,
    TutorDepositHeld,
    TutorDepositSettled,
)
from .publisher import EventPublisher

__all__ = [
    "ApplicationSubmitted",
    "ClassCancelled",
    "ClassCreated",
    "ClassScheduleUpdated",
    "EnrollmentWithdrawn",
    "EscrowPaid",
    "EscrowRefunded",
    "EscrowReleased",
    "EventPublisher",
    "RequestAccepted",
    "RescheduleAccepted",
    "RescheduleRejected",
    "RescheduleRequested",
    "TutorDepositHeld",
    "TutorDepositSettled",
]
