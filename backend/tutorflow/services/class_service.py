# backend/tutorflow/services/class_service.py
"""
Class Service

Class lifecycle and enrollment:
- Creating a class together with its lesson schedule (all-or-nothing)
- Enrolling, approving and rejecting students
- Withdrawing or removing a single student with a full refund
- Replacing a class's weekly rules and regenerating its lessons
- Cancelling with reason-driven escrow refunds and deposit settlement
- Completing with escrow release once enough lessons were taught
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
import logging
from typing import List, Optional, Sequence, Tuple, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    ApprovalStatus,
    CancellationReason,
    ClassMode,
    ClassStatus,
    EscrowStatus,
    LessonStatus,
    PaymentStatus,
    TutorDepositStatus,
)
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    StateTransitionException,
    ValidationException,
)
from ..core.timezone_utils import get_schedule_timezone, local_date
from ..events import ClassCancelled, ClassCreated, ClassScheduleUpdated, EnrollmentWithdrawn, EventPublisher
from ..models.lesson import Lesson
from ..models.schedule import RecurringScheduleRule
from ..models.tutor_class import ClassAssign, TutorClass
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import quantize_money
from .conflict_checker import ConflictChecker
from .escrow_service import EscrowService
from .recurring_rule_expander import RecurringRule, validate_rules
from .refund_policy_engine import RefundPolicyEngine
from .schedule_generation_service import GeneratedLesson, ScheduleGenerationService

logger = logging.getLogger(__name__)


@dataclass
class ClassCreationResult:
    tutor_class: TutorClass
    lessons: List[GeneratedLesson] = field(default_factory=list)


@dataclass(frozen=True)
class CancelClassResult:
    class_id: str
    new_status: ClassStatus
    reason: CancellationReason
    refunded_escrows_count: int
    total_refunded_amount: Decimal
    message: str
    already_cancelled: bool = False
    deposit_status: Optional[TutorDepositStatus] = None
    deposit_amount: Decimal = Decimal("0.00")


@dataclass(frozen=True)
class EnrollmentRemovalResult:
    class_assign: ClassAssign
    refunded_amount: Decimal
    message: str


class ClassService(BaseService):
    def __init__(
        self,
        db: Session,
        escrow_service: Optional[EscrowService] = None,
        generation_service: Optional[ScheduleGenerationService] = None,
        refund_policy: Optional[RefundPolicyEngine] = None,
    ):
        super().__init__(db)
        self.class_repository = RepositoryFactory.create_class_repository(db)
        self.assign_repository = RepositoryFactory.create_class_assign_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.entry_repository = RepositoryFactory.create_schedule_entry_repository(db)
        self.escrow_repository = RepositoryFactory.create_escrow_repository(db)
        self.reschedule_repository = RepositoryFactory.create_reschedule_repository(db)
        self.escrow_service = escrow_service or EscrowService(db)
        self.conflict_checker = ConflictChecker(db)
        self.generation_service = generation_service or ScheduleGenerationService(
            db, conflict_checker=self.conflict_checker
        )
        self.refund_policy = refund_policy or RefundPolicyEngine()
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    # ------------------------------------------------------------------ reads
    def get_class(self, class_id: str) -> TutorClass:
        tutor_class = self.class_repository.get_by_id(class_id)
        if tutor_class is None:
            raise NotFoundException(f"Class {class_id} not found")
        return tutor_class

    def list_lessons(self, class_id: str) -> List[Lesson]:
        return self.lesson_repository.list_for_class(class_id)

    def get_roster(self, class_id: str) -> List[ClassAssign]:
        """Enrollments that count: Approved and Paid, or Approved with payment waived."""
        self.get_class(class_id)
        return self.assign_repository.list_roster(class_id)

    # ---------------------------------------------------------------- create
    @BaseService.measure_operation("create_class")
    def create_class(
        self,
        *,
        tutor_id: str,
        title: str,
        mode: Union[ClassMode, str],
        price: Union[Decimal, int, str],
        start_date: date,
        rules: Sequence[RecurringRule],
        student_limit: int = 1,
        subject: Optional[str] = None,
        description: Optional[str] = None,
        class_request_id: Optional[str] = None,
        use_transaction: bool = True,
    ) -> ClassCreationResult:
        """
        Create a class and materialize its lessons in one unit of work.

        The class is inserted PENDING and moves to ACTIVE once its schedule is
        generated; a schedule conflict leaves nothing behind.
        """
        if not title or not title.strip():
            raise ValidationException("Class title is required")
        amount = quantize_money(price)
        if amount < 0:
            raise ValidationException("Price must not be negative", details={"price": str(amount)})
        if student_limit < 1:
            raise ValidationException("Student limit must be at least 1")
        try:
            class_mode = ClassMode(mode)
        except ValueError as exc:
            raise ValidationException(f"Unknown class mode: {mode!r}") from exc
        rule_list = list(rules)
        validate_rules(rule_list)

        def _create() -> ClassCreationResult:
            now = self.now()
            tutor_class = self.class_repository.create(
                tutor_id=tutor_id,
                class_request_id=class_request_id,
                title=title.strip(),
                subject=subject,
                description=description,
                mode=class_mode,
                price=amount,
                student_limit=student_limit,
                current_student_count=0,
                start_date=start_date,
                status=ClassStatus.PENDING,
                created_at=now,
            )
            self.class_repository.add_all(
                [
                    RecurringScheduleRule(
                        class_id=tutor_class.id,
                        position=position,
                        day_of_week=rule.day_of_week,
                        start_time=rule.start_time,
                        end_time=rule.end_time,
                    )
                    for position, rule in enumerate(rule_list)
                ]
            )
            lessons = self.generation_service.generate(
                tutor_class.id, tutor_id, start_date, rule_list, use_transaction=False
            )
            tutor_class.transition_to(ClassStatus.ACTIVE)
            self.class_repository.flush()
            self.publisher.publish(
                ClassCreated(
                    class_id=tutor_class.id,
                    tutor_id=tutor_id,
                    class_request_id=class_request_id,
                    lesson_count=len(lessons),
                    created_at=now,
                )
            )
            return ClassCreationResult(tutor_class=tutor_class, lessons=lessons)

        guard = self.conflict_checker.tutor_guard(tutor_id) if use_transaction else nullcontext()
        with guard:
            if use_transaction:
                with self.transaction():
                    result = _create()
            else:
                result = _create()

        logger.info(
            "Class %s created for tutor %s with %d lessons",
            result.tutor_class.id,
            tutor_id,
            len(result.lessons),
        )
        return result

    # ------------------------------------------------------------- enrollment
    @BaseService.measure_operation("enroll_student")
    def enroll_student(self, class_id: str, student_id: str, *, use_transaction: bool = True) -> ClassAssign:
        """Create a Pending/Unpaid enrollment."""

        def _enroll() -> ClassAssign:
            tutor_class = self.get_class(class_id)
            if tutor_class.is_terminal:
                raise BusinessRuleException(
                    f"Class {class_id} is {tutor_class.status.value}", code="CLASS_CLOSED"
                )
            if tutor_class.tutor_id == student_id:
                raise ValidationException("A tutor cannot enroll in their own class")
            if self.assign_repository.get_for_class_student(class_id, student_id) is not None:
                raise ConflictException(
                    f"Student {student_id} is already enrolled in class {class_id}",
                    code="ALREADY_ENROLLED",
                )
            if tutor_class.current_student_count >= tutor_class.student_limit:
                raise BusinessRuleException(f"Class {class_id} is full", code="CLASS_FULL")
            return self.assign_repository.create(
                class_id=class_id,
                student_id=student_id,
                approval_status=ApprovalStatus.PENDING,
                payment_status=PaymentStatus.UNPAID,
                payment_waived=False,
                enrolled_at=self.now(),
            )

        if use_transaction:
            with self.transaction():
                return _enroll()
        return _enroll()

    @BaseService.measure_operation("approve_enrollment")
    def approve_enrollment(
        self,
        assign_id: str,
        tutor_id: str,
        *,
        waive_payment: bool = False,
        use_transaction: bool = True,
    ) -> ClassAssign:
        """Approve a Paid enrollment, or waive payment and approve."""

        def _approve() -> ClassAssign:
            assign, tutor_class = self._load_assign_for_tutor(assign_id, tutor_id)
            if assign.approval_status != ApprovalStatus.PENDING:
                raise StateTransitionException(
                    "ClassAssign", assign.id, assign.approval_status.value, ApprovalStatus.APPROVED.value
                )
            if waive_payment:
                assign.payment_waived = True
            if not assign.payment_waived and assign.payment_status != PaymentStatus.PAID:
                raise BusinessRuleException(
                    "Enrollment must be paid (or payment waived) before approval",
                    code="PAYMENT_REQUIRED",
                )
            if self.assign_repository.count_roster(tutor_class.id) >= tutor_class.student_limit:
                raise BusinessRuleException(f"Class {tutor_class.id} is full", code="CLASS_FULL")
            assign.approval_status = ApprovalStatus.APPROVED
            assign.approved_at = self.now()
            self.assign_repository.flush()
            tutor_class.current_student_count = self.assign_repository.count_roster(tutor_class.id)
            self.class_repository.flush()
            return assign

        if use_transaction:
            with self.transaction():
                return _approve()
        return _approve()

    @BaseService.measure_operation("reject_enrollment")
    def reject_enrollment(self, assign_id: str, tutor_id: str, *, use_transaction: bool = True) -> ClassAssign:
        """Reject an enrollment; a held escrow is refunded in full."""

        def _reject() -> ClassAssign:
            assign, tutor_class = self._load_assign_for_tutor(assign_id, tutor_id)
            if assign.approval_status == ApprovalStatus.REJECTED:
                raise StateTransitionException(
                    "ClassAssign", assign.id, assign.approval_status.value, ApprovalStatus.REJECTED.value
                )
            assign.approval_status = ApprovalStatus.REJECTED
            held = self.escrow_repository.find_held_for_assign(assign.id)
            if held is not None:
                self.escrow_service.refund_escrow(held.id, Decimal("1"), use_transaction=False)
            self.assign_repository.flush()
            tutor_class.current_student_count = self.assign_repository.count_roster(tutor_class.id)
            self.class_repository.flush()
            return assign

        if use_transaction:
            with self.transaction():
                return _reject()
        return _reject()

    def _load_assign_for_tutor(self, assign_id: str, tutor_id: str):
        assign = self.assign_repository.get_by_id(assign_id)
        if assign is None:
            raise NotFoundException(f"Enrollment {assign_id} not found")
        tutor_class = self.class_repository.get_for_update(assign.class_id)
        if tutor_class is None:
            raise NotFoundException(f"Class {assign.class_id} not found")
        if tutor_class.tutor_id != tutor_id:
            raise ForbiddenException("Only the class tutor can manage enrollments")
        if tutor_class.is_terminal:
            raise BusinessRuleException(
                f"Class {tutor_class.id} is {tutor_class.status.value}", code="CLASS_CLOSED"
            )
        return assign, tutor_class

    # ---------------------------------------------------------------- cancel
    @BaseService.measure_operation("cancel_class")
    def cancel_class(
        self,
        class_id: str,
        reason: Union[CancellationReason, str],
        cancelled_by: Optional[str] = None,
        *,
        use_transaction: bool = True,
    ) -> CancelClassResult:
        """
        Cancel a class and settle its held escrows by refund policy.

        A held tutor deposit is returned, or forfeited when the reason is the
        tutor's fault. Cancelling an already-cancelled class is a no-op that
        refunds nothing. A completed class cannot be cancelled, and once most
        lessons were taught only a late reason may cancel it.
        """
        try:
            cancel_reason = CancellationReason(reason)
        except ValueError as exc:
            raise ValidationException(f"Unknown cancellation reason: {reason!r}") from exc

        def _cancel() -> CancelClassResult:
            tutor_class = self.class_repository.get_for_update(class_id)
            if tutor_class is None:
                raise NotFoundException(f"Class {class_id} not found")
            if tutor_class.status == ClassStatus.CANCELLED:
                return CancelClassResult(
                    class_id=class_id,
                    new_status=ClassStatus.CANCELLED,
                    reason=CancellationReason(tutor_class.cancellation_reason or cancel_reason),
                    refunded_escrows_count=0,
                    total_refunded_amount=Decimal("0.00"),
                    message="Class was already cancelled",
                    already_cancelled=True,
                )

            now = self.now()
            lessons = self.lesson_repository.list_for_class(class_id)
            total_lessons, taught_lessons = _lesson_progress(lessons)
            if not tutor_class.is_terminal and not self.refund_policy.allows_cancellation(
                cancel_reason, total_lessons=total_lessons, taught_lessons=taught_lessons
            ):
                raise BusinessRuleException(
                    f"Class {class_id} has taught {taught_lessons} of {total_lessons} lessons "
                    f"and can no longer be cancelled for {cancel_reason.value}",
                    code="CLASS_MOSTLY_COMPLETED",
                    details={
                        "total_lessons": total_lessons,
                        "taught_lessons": taught_lessons,
                        "threshold": str(self.refund_policy.cancellation_lock_threshold),
                    },
                )
            decision = self.refund_policy.evaluate(
                cancel_reason,
                now=now,
                first_lesson_start=min(
                    (
                        lesson.schedule_entry.start_at
                        for lesson in lessons
                        if lesson.schedule_entry and lesson.status != LessonStatus.CANCELLED
                    ),
                    default=None,
                ),
                total_lessons=total_lessons,
                taught_lessons=taught_lessons,
            )
            # Raises StateTransitionException for a completed class.
            tutor_class.cancel(cancel_reason, cancelled_by, now)

            open_lesson_ids = [lesson.id for lesson in lessons if lesson.status == LessonStatus.SCHEDULED]
            for lesson in lessons:
                if lesson.status == LessonStatus.SCHEDULED:
                    lesson.status = LessonStatus.CANCELLED
            self.lesson_repository.flush()
            self.entry_repository.soft_delete_for_lessons(open_lesson_ids, now)
            self.reschedule_repository.reject_pending_for_lessons(open_lesson_ids, now)

            held = self.escrow_repository.lock_held_for_class(class_id)
            deposit_status, deposit_amount = self._settle_deposit(
                class_id, cancel_reason, [escrow.payer_user_id for escrow in held]
            )

            refunded_count = 0
            refunded_total = Decimal("0.00")
            for escrow in held:
                settled = self.escrow_service.refund_escrow(
                    escrow.id, decision.fraction, reason=cancel_reason, use_transaction=False
                )
                if settled.status == EscrowStatus.REFUNDED:
                    refunded_count += 1
                    refunded_total += quantize_money(settled.refunded_amount)

            self.publisher.publish(
                ClassCancelled(
                    class_id=class_id,
                    reason=cancel_reason.value,
                    cancelled_by=cancelled_by,
                    refunded_escrows_count=refunded_count,
                    total_refunded_amount=refunded_total,
                    cancelled_at=now,
                )
            )
            return CancelClassResult(
                class_id=class_id,
                new_status=ClassStatus.CANCELLED,
                reason=cancel_reason,
                refunded_escrows_count=refunded_count,
                total_refunded_amount=refunded_total,
                message=f"Class cancelled; {decision.policy_basis}",
                deposit_status=deposit_status,
                deposit_amount=deposit_amount,
            )

        if use_transaction:
            with self.transaction():
                result = _cancel()
        else:
            result = _cancel()

        logger.info(
            "Cancel class %s (%s): refunded %d escrows totalling %s",
            class_id,
            cancel_reason.value,
            result.refunded_escrows_count,
            result.total_refunded_amount,
        )
        return result

    # ------------------------------------------------------- single student
    @BaseService.measure_operation("withdraw_from_class")
    def withdraw_from_class(
        self,
        class_id: str,
        student_id: str,
        *,
        reason: Optional[str] = None,
        use_transaction: bool = True,
    ) -> EnrollmentRemovalResult:
        """
        Let a student leave a class that has not started; a held escrow is
        refunded in full.

        Allowed until ``withdrawal_cutoff_days`` local days before the start date.
        """

        def _withdraw() -> EnrollmentRemovalResult:
            tutor_class = self._lock_class(class_id)
            if tutor_class.status in (ClassStatus.ONGOING, ClassStatus.COMPLETED, ClassStatus.CANCELLED):
                raise BusinessRuleException(
                    f"Cannot withdraw from a class that is {tutor_class.status.value}",
                    code="WITHDRAWAL_CLOSED",
                )
            today = local_date(self.now(), get_schedule_timezone())
            cutoff = tutor_class.start_date - timedelta(days=settings.withdrawal_cutoff_days)
            if today >= cutoff:
                raise BusinessRuleException(
                    f"Withdrawal closed on {cutoff.isoformat()}",
                    code="WITHDRAWAL_CLOSED",
                    details={"start_date": tutor_class.start_date.isoformat(), "today": today.isoformat()},
                )
            return self._remove_enrollment(tutor_class, student_id, removed_by=student_id, reason=reason)

        if use_transaction:
            with self.transaction():
                result = _withdraw()
        else:
            result = _withdraw()
        logger.info(
            "Student %s withdrew from class %s (refunded %s)", student_id, class_id, result.refunded_amount
        )
        return result

    @BaseService.measure_operation("cancel_student_enrollment")
    def cancel_student_enrollment(
        self,
        class_id: str,
        student_id: str,
        reason: str,
        cancelled_by: Optional[str] = None,
        *,
        use_transaction: bool = True,
    ) -> EnrollmentRemovalResult:
        """
        Remove one student from a group class and refund their held escrow in
        full. A one-to-one class is cancelled as a whole instead.
        """
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to remove a student")

        def _cancel() -> EnrollmentRemovalResult:
            tutor_class = self._lock_class(class_id)
            if tutor_class.is_terminal:
                raise BusinessRuleException(
                    f"Class {class_id} is {tutor_class.status.value}", code="CLASS_CLOSED"
                )
            if tutor_class.student_limit == 1:
                raise BusinessRuleException(
                    "A one-to-one class is cancelled as a whole, not per student",
                    code="SINGLE_STUDENT_CLASS",
                )
            return self._remove_enrollment(
                tutor_class, student_id, removed_by=cancelled_by, reason=reason.strip()
            )

        if use_transaction:
            with self.transaction():
                result = _cancel()
        else:
            result = _cancel()
        logger.info(
            "Enrollment of %s in class %s cancelled by %s (refunded %s)",
            student_id,
            class_id,
            cancelled_by,
            result.refunded_amount,
        )
        return result

    def _remove_enrollment(
        self,
        tutor_class: TutorClass,
        student_id: str,
        *,
        removed_by: Optional[str],
        reason: Optional[str],
    ) -> EnrollmentRemovalResult:
        assign = self.assign_repository.get_for_class_student(tutor_class.id, student_id)
        if assign is None:
            raise NotFoundException(f"Student {student_id} is not enrolled in class {tutor_class.id}")
        if assign.approval_status == ApprovalStatus.REJECTED:
            raise StateTransitionException(
                "ClassAssign", assign.id, assign.approval_status.value, ApprovalStatus.REJECTED.value
            )

        now = self.now()
        refunded = Decimal("0.00")
        held = self.escrow_repository.find_held_for_assign(assign.id)
        if held is not None:
            settled = self.escrow_service.refund_escrow(held.id, Decimal("1"), use_transaction=False)
            refunded = quantize_money(settled.refunded_amount)
        assign.approval_status = ApprovalStatus.REJECTED
        assign.withdrawn_at = now
        assign.withdrawal_reason = reason
        self.assign_repository.flush()
        tutor_class.current_student_count = self.assign_repository.count_roster(tutor_class.id)
        self.class_repository.flush()

        self.publisher.publish(
            EnrollmentWithdrawn(
                class_assign_id=assign.id,
                class_id=tutor_class.id,
                student_id=student_id,
                removed_by=removed_by,
                reason=reason,
                refunded_amount=refunded,
                withdrawn_at=now,
            )
        )
        return EnrollmentRemovalResult(
            class_assign=assign,
            refunded_amount=refunded,
            message="Enrollment removed" + (f"; refunded {refunded}" if held is not None else ""),
        )

    # -------------------------------------------------------------- schedule
    @BaseService.measure_operation("update_class_schedule")
    def update_class_schedule(
        self,
        class_id: str,
        tutor_id: str,
        rules: Sequence[RecurringRule],
        start_date: Optional[date] = None,
    ) -> ClassCreationResult:
        """
        Replace a class's weekly rules and regenerate its lessons.

        Only before any lesson is taught or any payment is held. The old
        scheduled lessons are cancelled and their slots freed; the new
        lessons pass the conflict checker or nothing changes.
        """
        rule_list = list(rules)
        validate_rules(rule_list)

        with self.conflict_checker.tutor_guard(tutor_id):
            with self.transaction():
                tutor_class = self._lock_class(class_id)
                if tutor_class.tutor_id != tutor_id:
                    raise ForbiddenException("Only the class tutor can change its schedule")
                if tutor_class.status not in (ClassStatus.PENDING, ClassStatus.ACTIVE):
                    raise BusinessRuleException(
                        f"Cannot change the schedule of a class that is {tutor_class.status.value}",
                        code="SCHEDULE_LOCKED",
                    )
                lessons = self.lesson_repository.list_for_class(class_id)
                if any(lesson.status == LessonStatus.COMPLETED for lesson in lessons):
                    raise BusinessRuleException(
                        "Cannot change the schedule once a lesson was taught", code="SCHEDULE_LOCKED"
                    )
                if self.escrow_repository.lock_held_for_class(class_id):
                    raise BusinessRuleException(
                        "Cannot change the schedule while student payments are held",
                        code="SCHEDULE_LOCKED",
                    )
                new_start = start_date or tutor_class.start_date
                today = local_date(self.now(), get_schedule_timezone())
                if new_start < today:
                    raise ValidationException(
                        "Start date must not be in the past",
                        details={"start_date": new_start.isoformat(), "today": today.isoformat()},
                    )

                now = self.now()
                open_lesson_ids = [lesson.id for lesson in lessons if lesson.status == LessonStatus.SCHEDULED]
                for lesson in lessons:
                    if lesson.status == LessonStatus.SCHEDULED:
                        lesson.status = LessonStatus.CANCELLED
                self.lesson_repository.flush()
                self.entry_repository.soft_delete_for_lessons(open_lesson_ids, now)
                self.reschedule_repository.reject_pending_for_lessons(open_lesson_ids, now)

                tutor_class.rules = [
                    RecurringScheduleRule(
                        position=position,
                        day_of_week=rule.day_of_week,
                        start_time=rule.start_time,
                        end_time=rule.end_time,
                    )
                    for position, rule in enumerate(rule_list)
                ]
                tutor_class.start_date = new_start
                self.class_repository.flush()

                generated = self.generation_service.generate(
                    class_id, tutor_id, new_start, rule_list, use_transaction=False
                )
                self.publisher.publish(
                    ClassScheduleUpdated(
                        class_id=class_id,
                        tutor_id=tutor_id,
                        first_lesson_id=generated[0].lesson_id,
                        lesson_count=len(generated),
                        updated_at=now,
                    )
                )

        logger.info(
            "Class %s schedule replaced: %d lessons cancelled, %d generated",
            class_id,
            len(open_lesson_ids),
            len(generated),
        )
        return ClassCreationResult(tutor_class=tutor_class, lessons=generated)

    # -------------------------------------------------------------- complete
    @BaseService.measure_operation("complete_class")
    def complete_class(self, class_id: str, *, use_transaction: bool = True) -> TutorClass:
        """
        Mark a class COMPLETED, release every held escrow and return the
        tutor's deposit.

        At least ``class_completion_threshold`` of the non-cancelled lessons
        must be completed.
        """

        def _complete() -> TutorClass:
            tutor_class = self._lock_class(class_id)
            total, taught = _lesson_progress(self.lesson_repository.list_for_class(class_id))
            threshold = Decimal(str(settings.class_completion_threshold))
            if total == 0:
                raise BusinessRuleException(f"Class {class_id} has no lessons", code="NO_LESSONS")
            if Decimal(taught) / Decimal(total) < threshold:
                raise BusinessRuleException(
                    f"Only {taught} of {total} lessons of class {class_id} are completed",
                    code="CLASS_NOT_FINISHED",
                    details={"total_lessons": total, "taught_lessons": taught, "threshold": str(threshold)},
                )
            tutor_class.complete(self.now())
            self.class_repository.flush()
            for escrow in self.escrow_repository.lock_held_for_class(class_id):
                self.escrow_service.release_escrow(escrow.id, use_transaction=False)
            self._settle_deposit(class_id, None, [])
            return tutor_class

        if use_transaction:
            with self.transaction():
                return _complete()
        return _complete()

    @BaseService.measure_operation("start_class")
    def start_class(self, class_id: str, *, use_transaction: bool = True) -> TutorClass:
        """ACTIVE -> ONGOING once the first lesson has begun."""

        def _start() -> TutorClass:
            tutor_class = self._lock_class(class_id)
            if self.awaiting_deposit(tutor_class):
                raise BusinessRuleException(
                    f"Class {class_id} cannot start before the tutor's deposit is held",
                    code="DEPOSIT_REQUIRED",
                )
            tutor_class.transition_to(ClassStatus.ONGOING)
            self.class_repository.flush()
            return tutor_class

        if use_transaction:
            with self.transaction():
                return _start()
        return _start()

    def awaiting_deposit(self, tutor_class: TutorClass) -> bool:
        """True when deposits are required and a paid online class has none held."""
        if not settings.tutor_deposit_required or ClassMode(tutor_class.mode) != ClassMode.ONLINE:
            return False
        if quantize_money(tutor_class.price) <= 0:
            return False
        if not self.escrow_repository.count(class_id=tutor_class.id, status=EscrowStatus.HELD):
            return False
        return self.escrow_service.get_held_deposit(tutor_class.id) is None

    # --------------------------------------------------------------- helpers
    def _lock_class(self, class_id: str) -> TutorClass:
        tutor_class = self.class_repository.get_for_update(class_id)
        if tutor_class is None:
            raise NotFoundException(f"Class {class_id} not found")
        return tutor_class

    def _settle_deposit(
        self,
        class_id: str,
        reason: Optional[CancellationReason],
        payers: Sequence[str],
    ) -> Tuple[Optional[TutorDepositStatus], Decimal]:
        """Return or forfeit the class's held deposit; ``reason`` None means completion."""
        deposit = self.escrow_service.get_held_deposit(class_id)
        if deposit is None:
            return None, Decimal("0.00")
        outcome = TutorDepositStatus.REFUNDED if reason is None else self.refund_policy.deposit_outcome(reason)
        if outcome == TutorDepositStatus.FORFEITED:
            self.escrow_service.forfeit_tutor_deposit(
                deposit.id,
                reason,
                recipients=list(payers) if settings.deposit_forfeit_to_students else None,
                use_transaction=False,
            )
        else:
            self.escrow_service.refund_tutor_deposit(deposit.id, use_transaction=False)
        return outcome, quantize_money(deposit.amount)


def _lesson_progress(lessons: Sequence[Lesson]) -> Tuple[int, int]:
    """(non-cancelled lessons, completed lessons)."""
    total = sum(1 for lesson in lessons if lesson.status != LessonStatus.CANCELLED)
    taught = sum(1 for lesson in lessons if lesson.status == LessonStatus.COMPLETED)
    return total, taught
