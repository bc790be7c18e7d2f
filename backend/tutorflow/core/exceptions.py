# backend/tutorflow/core/exceptions.py
"""
Domain-specific exceptions for the scheduling and settlement engine.

Every failure the core raises is one of these, so the API layer can map
them onto HTTP responses without inspecting messages.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationException(DomainException):
    """Raised when input is malformed; nothing has been mutated."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenException(DomainException):
    """Raised when the caller is not a party to the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Specific business exceptions


class ScheduleConflictException(ConflictException):
    """Raised when a candidate interval overlaps a committed schedule entry."""

    def __init__(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        conflicting_entry_id: str,
        conflicting_start: datetime,
        conflicting_end: datetime,
        occurrence_index: Optional[int] = None,
    ):
        super().__init__(
            message=(
                f"{start.isoformat()} - {end.isoformat()} conflicts with schedule entry "
                f"{conflicting_entry_id} ({conflicting_start.isoformat()} - "
                f"{conflicting_end.isoformat()})"
            ),
            code="SCHEDULE_CONFLICT",
            details={
                "tutor_id": tutor_id,
                "start": start.isoformat(),
                "end": end.isoformat(),
                "occurrence_index": occurrence_index,
                "conflicting_entry_id": conflicting_entry_id,
                "conflicting_start": conflicting_start.isoformat(),
                "conflicting_end": conflicting_end.isoformat(),
            },
        )
        self.conflicting_entry_id = conflicting_entry_id
        self.occurrence_index = occurrence_index


class RescheduleConflictException(ConflictException):
    """Raised when a lesson already has a pending reschedule request."""

    def __init__(self, lesson_id: str, pending_request_id: Optional[str] = None):
        super().__init__(
            message=f"Lesson {lesson_id} already has a pending reschedule request",
            code="RESCHEDULE_CONFLICT",
            details={"lesson_id": lesson_id, "pending_request_id": pending_request_id},
        )
        self.pending_request_id = pending_request_id


class StateTransitionException(BusinessRuleException):
    """Raised when an entity cannot move from its current status to the requested one."""

    def __init__(self, entity: str, entity_id: str, current: str, attempted: str):
        super().__init__(
            message=f"{entity} {entity_id} cannot transition from {current} to {attempted}",
            code="INVALID_STATE_TRANSITION",
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current_status": current,
                "attempted_status": attempted,
            },
        )


class LedgerException(BusinessRuleException):
    """Raised when a wallet cannot take part in a money movement."""


class InsufficientBalanceException(LedgerException):
    def __init__(self, wallet_id: str, balance: Decimal, required: Decimal):
        super().__init__(
            message=f"Wallet {wallet_id} balance {balance} is below required {required}",
            code="INSUFFICIENT_BALANCE",
            details={"wallet_id": wallet_id, "balance": str(balance), "required": str(required)},
        )


class WalletFrozenException(LedgerException):
    def __init__(self, wallet_id: str):
        super().__init__(
            message=f"Wallet {wallet_id} is frozen",
            code="WALLET_FROZEN",
            details={"wallet_id": wallet_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """


class TutorScheduleBusyException(ConflictException):
    """Raised when another instance currently holds the tutor's schedule mutex."""

    def __init__(self, tutor_id: str):
        super().__init__(
            message="Tutor schedule is being updated, retry shortly",
            code="TUTOR_SCHEDULE_BUSY",
            details={"tutor_id": tutor_id},
        )
