# backend/tutorflow/core/enums.py
"""
Core enums for the scheduling and settlement engine.

Every status the core persists is one of these closed enumerations; values
are the lowercase strings stored in the database.
"""

from enum import Enum


class ClassRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ClassStatus(str, Enum):
    """
    Class lifecycle.

    PENDING -> ACTIVE (schedule generated) -> ONGOING (first lesson started)
    -> COMPLETED (last lesson passed). CANCELLED is reachable from any
    non-terminal state.
    """

    PENDING = "pending"
    ACTIVE = "active"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ClassStatus.COMPLETED, ClassStatus.CANCELLED)


class ClassMode(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DeliveryMode(str, Enum):
    """Commission bucket derived from class size and mode."""

    ONE_TO_ONE_ONLINE = "one_to_one_online"
    ONE_TO_ONE_OFFLINE = "one_to_one_offline"
    GROUP_ONLINE = "group_online"
    GROUP_OFFLINE = "group_offline"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class LessonStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScheduleEntryType(str, Enum):
    LESSON = "lesson"
    BLOCK = "block"


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class EscrowStatus(str, Enum):
    """Escrow moves HELD -> RELEASED or HELD -> REFUNDED and never back."""

    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not EscrowStatus.HELD


class TutorDepositStatus(str, Enum):
    """A tutor deposit is HELD until the class ends, then REFUNDED or FORFEITED."""

    HELD = "held"
    REFUNDED = "refunded"
    FORFEITED = "forfeited"

    @property
    def is_terminal(self) -> bool:
        return self is not TutorDepositStatus.HELD


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAY_ESCROW = "pay_escrow"
    ESCROW_IN = "escrow_in"
    PAYOUT_OUT = "payout_out"
    PAYOUT_IN = "payout_in"
    REFUND_OUT = "refund_out"
    REFUND_IN = "refund_in"
    COMMISSION = "commission"
    TUTOR_DEPOSIT_OUT = "tutor_deposit_out"
    TUTOR_DEPOSIT_IN = "tutor_deposit_in"
    DEPOSIT_RETURN_OUT = "deposit_return_out"
    DEPOSIT_RETURN_IN = "deposit_return_in"
    DEPOSIT_FORFEIT_OUT = "deposit_forfeit_out"
    DEPOSIT_FORFEIT_IN = "deposit_forfeit_in"


class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CancellationReason(str, Enum):
    """Why a class was cancelled; drives the refund fraction."""

    TUTOR_FAULT = "tutor_fault"
    ADMIN_FORCED = "admin_forced"
    SYSTEM_ERROR = "system_error"
    POLICY_VIOLATION = "policy_violation"
    DUPLICATE_CLASS = "duplicate_class"
    INCORRECT_INFO = "incorrect_info"
    STUDENT_INITIATED = "student_initiated"
    STUDENT_FAULT = "student_fault"
    MUTUAL_CONSENT = "mutual_consent"
    OTHER = "other"


class PaymentContextType(str, Enum):
    WALLET_DEPOSIT = "wallet_deposit"
    CLASS_ESCROW = "class_escrow"


class GatewayPaymentStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    PAID = "paid"
    FAILED = "failed"
