# backend/tutorflow/services/class_request_service.py
"""
Class Request Service

Student requests, tutor applications and the accept flow that turns a
request into a class. Accepting locks the request row, so of two concurrent
accepts on one request exactly one wins; the other observes a non-pending
request and fails with a state error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import List, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    ApplicationStatus,
    ApprovalStatus,
    CancellationReason,
    ClassMode,
    ClassRequestStatus,
    ClassStatus,
    PaymentStatus,
)
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    DomainException,
    ForbiddenException,
    NotFoundException,
    RepositoryException,
    StateTransitionException,
    ValidationException,
)
from ..core.timezone_utils import get_schedule_timezone, local_date
from ..events import ApplicationSubmitted, EventPublisher, RequestAccepted
from ..models.class_request import ClassRequest, TutorApplication
from ..models.schedule import RecurringScheduleRule
from ..models.tutor_class import ClassAssign, TutorClass
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .class_service import CancelClassResult, ClassService
from .commission_service import quantize_money
from .recurring_rule_expander import RecurringRule, validate_rules
from .schedule_generation_service import GeneratedLesson

logger = logging.getLogger(__name__)


@dataclass
class AcceptApplicationResult:
    class_request: ClassRequest
    application: TutorApplication
    tutor_class: TutorClass
    class_assign: ClassAssign
    lessons: List[GeneratedLesson] = field(default_factory=list)
    rejected_application_ids: List[str] = field(default_factory=list)


@dataclass
class CancelRequestResult:
    class_request: ClassRequest
    class_result: Optional[CancelClassResult] = None


@dataclass
class ExpirySweepResult:
    examined: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    expired_ids: List[str] = field(default_factory=list)


class ClassRequestService(BaseService):
    def __init__(self, db: Session, class_service: Optional[ClassService] = None):
        super().__init__(db)
        self.request_repository = RepositoryFactory.create_class_request_repository(db)
        self.application_repository = RepositoryFactory.create_tutor_application_repository(db)
        self.class_service = class_service or ClassService(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    # ------------------------------------------------------------------ reads
    def get_request(self, request_id: str) -> ClassRequest:
        request = self.request_repository.get_by_id(request_id)
        if request is None:
            raise NotFoundException(f"Class request {request_id} not found")
        return request

    def list_open_requests(self, tutor_id: Optional[str] = None) -> List[ClassRequest]:
        return self.request_repository.list_open(tutor_id)

    def list_applications(self, request_id: str) -> List[TutorApplication]:
        return self.application_repository.list_for_request(request_id)

    # ---------------------------------------------------------------- create
    @BaseService.measure_operation("create_class_request")
    def create_request(
        self,
        *,
        student_id: str,
        subject: str,
        mode: Union[ClassMode, str],
        budget: Union[Decimal, int, str],
        class_start_date: date,
        rules: Sequence[RecurringRule],
        student_limit: int = 1,
        description: Optional[str] = None,
        tutor_id: Optional[str] = None,
    ) -> ClassRequest:
        """Post a request, open to all tutors or directed at ``tutor_id``."""
        if not subject or not subject.strip():
            raise ValidationException("Subject is required")
        amount = quantize_money(budget)
        if amount <= 0:
            raise ValidationException("Budget must be positive", details={"budget": str(amount)})
        if student_limit < 1:
            raise ValidationException("Student limit must be at least 1")
        if tutor_id is not None and tutor_id == student_id:
            raise ValidationException("A request cannot be directed at its own author")
        try:
            class_mode = ClassMode(mode)
        except ValueError as exc:
            raise ValidationException(f"Unknown class mode: {mode!r}") from exc
        rule_list = list(rules)
        validate_rules(rule_list)

        now = self.now()
        if class_start_date < local_date(now, get_schedule_timezone()):
            raise ValidationException(
                "Class start date is in the past",
                details={"class_start_date": class_start_date.isoformat()},
            )

        with self.transaction():
            request = self.request_repository.create(
                student_id=student_id,
                tutor_id=tutor_id,
                subject=subject.strip(),
                description=description,
                mode=class_mode,
                budget=amount,
                student_limit=student_limit,
                class_start_date=class_start_date,
                status=ClassRequestStatus.PENDING,
                expires_at=now + timedelta(days=settings.class_request_expiry_days),
                created_at=now,
            )
            self.request_repository.add_all(
                [
                    RecurringScheduleRule(
                        class_request_id=request.id,
                        position=position,
                        day_of_week=rule.day_of_week,
                        start_time=rule.start_time,
                        end_time=rule.end_time,
                    )
                    for position, rule in enumerate(rule_list)
                ]
            )
        logger.info("Class request %s created by %s (directed=%s)", request.id, student_id, bool(tutor_id))
        return request

    # ---------------------------------------------------------- applications
    @BaseService.measure_operation("apply_to_request")
    def apply(self, request_id: str, tutor_id: str, message: Optional[str] = None) -> TutorApplication:
        with self.transaction():
            request = self.get_request(request_id)
            self._ensure_open(request)
            if request.student_id == tutor_id:
                raise ValidationException("A student cannot apply to their own request")
            if request.is_directed and request.tutor_id != tutor_id:
                raise ForbiddenException("This request is directed at another tutor")
            if self.application_repository.get_for_request_tutor(request_id, tutor_id) is not None:
                raise ConflictException(
                    f"Tutor {tutor_id} already applied to request {request_id}",
                    code="ALREADY_APPLIED",
                )
            now = self.now()
            application = self.application_repository.create(
                class_request_id=request_id,
                tutor_id=tutor_id,
                message=message,
                status=ApplicationStatus.PENDING,
                applied_at=now,
            )
            self.publisher.publish(
                ApplicationSubmitted(
                    application_id=application.id,
                    class_request_id=request_id,
                    tutor_id=tutor_id,
                    student_id=request.student_id,
                    applied_at=now,
                )
            )
        return application

    @BaseService.measure_operation("withdraw_application")
    def withdraw_application(self, application_id: str, tutor_id: str) -> TutorApplication:
        with self.transaction():
            application = self._get_application(application_id)
            if application.tutor_id != tutor_id:
                raise ForbiddenException("Only the applicant can withdraw an application")
            self._respond(application, ApplicationStatus.WITHDRAWN)
        return application

    @BaseService.measure_operation("reject_application")
    def reject_application(self, application_id: str, student_id: str) -> TutorApplication:
        with self.transaction():
            application = self._get_application(application_id)
            request = self.get_request(application.class_request_id)
            if request.student_id != student_id:
                raise ForbiddenException("Only the request owner can reject applications")
            self._respond(application, ApplicationStatus.REJECTED)
        return application

    @BaseService.measure_operation("decline_direct_request")
    def decline_direct_request(self, request_id: str, tutor_id: str) -> ClassRequest:
        """The targeted tutor turns down a directed request."""
        with self.transaction():
            request = self._lock_request(request_id)
            if not request.is_directed or request.tutor_id != tutor_id:
                raise ForbiddenException("Only the targeted tutor can decline this request")
            self._transition(request, ClassRequestStatus.REJECTED)
            self._reject_pending_applications(request.id)
        logger.info("Directed request %s declined by tutor %s", request_id, tutor_id)
        return request

    # ---------------------------------------------------------------- accept
    @BaseService.measure_operation("accept_application")
    def accept_application(self, application_id: str, student_id: str) -> AcceptApplicationResult:
        """
        Accept one application: the request becomes ACCEPTED, sibling pending
        applications are rejected, and the class, its lessons and the
        student's enrollment are created in the same transaction.
        """
        application = self._get_application(application_id)
        with self.class_service.conflict_checker.tutor_guard(application.tutor_id):
            with self.transaction():
                request = self._lock_request(application.class_request_id)
                if request.student_id != student_id:
                    raise ForbiddenException("Only the request owner can accept applications")
                if request.status != ClassRequestStatus.PENDING:
                    raise StateTransitionException(
                        "ClassRequest", request.id, request.status.value, ClassRequestStatus.ACCEPTED.value
                    )
                self._ensure_open(request)

                now = self.now()
                pending = self.application_repository.lock_pending_for_request(request.id)
                chosen = next((app for app in pending if app.id == application_id), None)
                if chosen is None:
                    raise StateTransitionException(
                        "TutorApplication",
                        application_id,
                        ApplicationStatus(application.status).value,
                        ApplicationStatus.ACCEPTED.value,
                    )
                rejected_ids: List[str] = []
                for app in pending:
                    app.status = ApplicationStatus.ACCEPTED if app.id == application_id else ApplicationStatus.REJECTED
                    app.responded_at = now
                    if app.id != application_id:
                        rejected_ids.append(app.id)
                self._transition(request, ClassRequestStatus.ACCEPTED)

                created = self.class_service.create_class(
                    tutor_id=chosen.tutor_id,
                    title=f"{request.subject} class",
                    subject=request.subject,
                    description=request.description,
                    mode=request.mode,
                    price=request.budget,
                    start_date=request.class_start_date,
                    rules=[RecurringRule.from_model(rule) for rule in request.rules],
                    student_limit=request.student_limit,
                    class_request_id=request.id,
                    use_transaction=False,
                )
                assign = self.class_service.assign_repository.create(
                    class_id=created.tutor_class.id,
                    student_id=request.student_id,
                    approval_status=ApprovalStatus.PENDING,
                    payment_status=PaymentStatus.UNPAID,
                    payment_waived=False,
                    enrolled_at=now,
                )
                self.publisher.publish(
                    RequestAccepted(
                        class_request_id=request.id,
                        application_id=chosen.id,
                        student_id=request.student_id,
                        tutor_id=chosen.tutor_id,
                        class_id=created.tutor_class.id,
                        accepted_at=now,
                    )
                )

        logger.info(
            "Request %s accepted: application %s -> class %s (%d siblings rejected)",
            request.id,
            chosen.id,
            created.tutor_class.id,
            len(rejected_ids),
        )
        return AcceptApplicationResult(
            class_request=request,
            application=chosen,
            tutor_class=created.tutor_class,
            class_assign=assign,
            lessons=created.lessons,
            rejected_application_ids=rejected_ids,
        )

    # ---------------------------------------------------------------- cancel
    @BaseService.measure_operation("cancel_class_request")
    def cancel_request(self, request_id: str, student_id: str) -> CancelRequestResult:
        """
        Student withdraws a request. An accepted request also cancels the
        class it spawned, as a student-initiated cancellation.
        """
        with self.transaction():
            request = self._lock_request(request_id)
            if request.student_id != student_id:
                raise ForbiddenException("Only the request owner can cancel it")
            previous = ClassRequestStatus(request.status)
            self._transition(request, ClassRequestStatus.CANCELLED)
            request.cancelled_at = self.now()
            class_result: Optional[CancelClassResult] = None
            if previous == ClassRequestStatus.PENDING:
                self._reject_pending_applications(request.id)
            else:
                spawned = request.spawned_class
                if spawned is not None and spawned.status != ClassStatus.COMPLETED:
                    class_result = self.class_service.cancel_class(
                        spawned.id,
                        CancellationReason.STUDENT_INITIATED,
                        cancelled_by=student_id,
                        use_transaction=False,
                    )
        return CancelRequestResult(class_request=request, class_result=class_result)

    # ----------------------------------------------------------------- sweep
    def expire_class_requests(
        self, now: Optional[datetime] = None, batch_size: Optional[int] = None
    ) -> ExpirySweepResult:
        """
        Move overdue PENDING requests to EXPIRED.

        Idempotent and safe to run from several workers: a request that is no
        longer pending is skipped. Per-item failures are logged and counted;
        the batch continues.
        """
        cutoff = now or self.now()
        result = ExpirySweepResult()
        with self.measure_operation_context("expire_class_requests"):
            with self.transaction():
                candidate_ids = self.request_repository.find_expired_pending_ids(
                    cutoff, batch_size or settings.sweep_batch_size
                )
                for request_id in candidate_ids:
                    result.examined += 1
                    try:
                        with self.db.begin_nested():
                            expired = self._expire_one(request_id, cutoff)
                    except (DomainException, RepositoryException, SQLAlchemyError) as exc:
                        result.failed += 1
                        prometheus_metrics.record_sweep_item("expire_class_requests", "failed")
                        logger.error("Failed to expire class request %s: %s", request_id, exc)
                        continue
                    if expired:
                        result.expired += 1
                        result.expired_ids.append(request_id)
                        prometheus_metrics.record_sweep_item("expire_class_requests", "expired")
                    else:
                        result.skipped += 1
                        prometheus_metrics.record_sweep_item("expire_class_requests", "skipped")
        if result.examined:
            logger.info(
                "Expiry sweep: %d examined, %d expired, %d skipped, %d failed",
                result.examined,
                result.expired,
                result.skipped,
                result.failed,
            )
        return result

    def _expire_one(self, request_id: str, cutoff: datetime) -> bool:
        request = self.request_repository.get_for_update(request_id)
        if request is None or request.status != ClassRequestStatus.PENDING:
            return False
        if request.expires_at > cutoff:
            return False
        self._transition(request, ClassRequestStatus.EXPIRED)
        self._reject_pending_applications(request.id)
        return True

    # --------------------------------------------------------------- helpers
    _REQUEST_TRANSITIONS = {
        ClassRequestStatus.PENDING: {
            ClassRequestStatus.ACCEPTED,
            ClassRequestStatus.REJECTED,
            ClassRequestStatus.EXPIRED,
            ClassRequestStatus.CANCELLED,
        },
        ClassRequestStatus.ACCEPTED: {ClassRequestStatus.CANCELLED},
    }

    def _transition(self, request: ClassRequest, new_status: ClassRequestStatus) -> None:
        current = ClassRequestStatus(request.status)
        if new_status not in self._REQUEST_TRANSITIONS.get(current, set()):
            raise StateTransitionException("ClassRequest", request.id, current.value, new_status.value)
        request.status = new_status
        self.request_repository.flush()

    def _lock_request(self, request_id: str) -> ClassRequest:
        request = self.request_repository.get_for_update(request_id)
        if request is None:
            raise NotFoundException(f"Class request {request_id} not found")
        return request

    def _ensure_open(self, request: ClassRequest) -> None:
        if request.status != ClassRequestStatus.PENDING:
            raise BusinessRuleException(
                f"Class request {request.id} is {request.status.value}", code="REQUEST_CLOSED"
            )
        if request.expires_at <= self.now():
            raise BusinessRuleException(f"Class request {request.id} has expired", code="REQUEST_EXPIRED")

    def _get_application(self, application_id: str) -> TutorApplication:
        application = self.application_repository.get_by_id(application_id)
        if application is None:
            raise NotFoundException(f"Application {application_id} not found")
        return application

    def _respond(self, application: TutorApplication, status: ApplicationStatus) -> None:
        if application.status != ApplicationStatus.PENDING:
            raise StateTransitionException(
                "TutorApplication", application.id, ApplicationStatus(application.status).value, status.value
            )
        application.status = status
        application.responded_at = self.now()
        self.application_repository.flush()

    def _reject_pending_applications(self, request_id: str) -> int:
        now = self.now()
        pending = self.application_repository.lock_pending_for_request(request_id)
        for application in pending:
            application.status = ApplicationStatus.REJECTED
            application.responded_at = now
        self.application_repository.flush()
        return len(pending)
