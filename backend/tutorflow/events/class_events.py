"""Class lifecycle domain events."""
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass
class ClassCreated:
    """Fired after a class and its lesson schedule are persisted."""

    class_id: str
    tutor_id: str
    class_request_id: Optional[str]
    lesson_count: int
    created_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"class_created:{self.class_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RequestAccepted:
    """Fired when a student accepts a tutor's application."""

    class_request_id: str
    application_id: str
    student_id: str
    tutor_id: str
    class_id: str
    accepted_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_request_id

    @property
    def idempotency_key(self) -> str:
        return f"request_accepted:{self.class_request_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApplicationSubmitted:
    application_id: str
    class_request_id: str
    tutor_id: str
    student_id: str
    applied_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_request_id

    @property
    def idempotency_key(self) -> str:
        return f"application_submitted:{self.application_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClassCancelled:
    """Fired after a class is cancelled and its escrows settled."""

    class_id: str
    reason: str
    cancelled_by: Optional[str]
    refunded_escrows_count: int
    total_refunded_amount: Decimal
    cancelled_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"class_cancelled:{self.class_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscrowPaid:
    escrow_id: str
    class_id: str
    student_id: str
    gross_amount: Decimal
    paid_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.escrow_id

    @property
    def idempotency_key(self) -> str:
        return f"escrow_paid:{self.escrow_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscrowReleased:
    escrow_id: str
    class_id: str
    tutor_id: str
    net_amount: Decimal
    commission_amount: Decimal
    released_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.escrow_id

    @property
    def idempotency_key(self) -> str:
        return f"escrow_released:{self.escrow_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscrowRefunded:
    """Fired when held funds go back, fully or partly, to the payer."""

    escrow_id: str
    class_id: str
    payer_user_id: str
    refunded_amount: Decimal
    released_amount: Decimal
    reason: Optional[str]
    refunded_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.escrow_id

    @property
    def idempotency_key(self) -> str:
        return f"escrow_refunded:{self.escrow_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TutorDepositHeld:
    deposit_id: str
    class_id: str
    tutor_id: str
    amount: Decimal
    held_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"tutor_deposit_held:{self.deposit_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TutorDepositSettled:
    """Fired when a held deposit is returned to the tutor or forfeited."""

    deposit_id: str
    class_id: str
    tutor_id: str
    status: str
    amount: Decimal
    reason: Optional[str]
    settled_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"tutor_deposit_settled:{self.deposit_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnrollmentWithdrawn:
    """Fired when a student leaves a class or is removed from it."""

    class_assign_id: str
    class_id: str
    student_id: str
    removed_by: Optional[str]
    reason: Optional[str]
    refunded_amount: Decimal
    withdrawn_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"enrollment_withdrawn:{self.class_assign_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ClassScheduleUpdated:
    class_id: str
    tutor_id: str
    first_lesson_id: str
    lesson_count: int
    updated_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.class_id

    @property
    def idempotency_key(self) -> str:
        return f"class_schedule_updated:{self.class_id}:{self.first_lesson_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RescheduleRequested:
    reschedule_request_id: str
    lesson_id: str
    requester_id: str
    new_start_at: datetime
    new_end_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.lesson_id

    @property
    def idempotency_key(self) -> str:
        return f"reschedule_requested:{self.reschedule_request_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RescheduleAccepted:
    reschedule_request_id: str
    lesson_id: str
    responder_id: str
    new_start_at: datetime
    new_end_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.lesson_id

    @property
    def idempotency_key(self) -> str:
        return f"reschedule_accepted:{self.reschedule_request_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RescheduleRejected:
    reschedule_request_id: str
    lesson_id: str
    responder_id: Optional[str]

    @property
    def aggregate_id(self) -> str:
        return self.lesson_id

    @property
    def idempotency_key(self) -> str:
        return f"reschedule_rejected:{self.reschedule_request_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
