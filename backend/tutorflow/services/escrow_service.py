# backend/tutorflow/services/escrow_service.py
"""
Escrow settlement.

Pay moves the student's money into the system escrow wallet. Release pays
the tutor the net and the platform the commission. Refund returns a policy
fraction to the payer and settles the remainder as a release. Each of these
is one unit of work: the escrow status and every ledger row commit together
or not at all.

A tutor deposit on an online class is held in the same escrow wallet and is
either returned to the tutor or forfeited when the class ends.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    ApprovalStatus,
    CancellationReason,
    ClassMode,
    EscrowStatus,
    PaymentStatus,
    TransactionType,
    TutorDepositStatus,
)
from ..core.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    NotFoundException,
    RepositoryException,
    StateTransitionException,
    ValidationException,
)
from ..events import (
    EscrowPaid,
    EscrowRefunded,
    EscrowReleased,
    EventPublisher,
    TutorDepositHeld,
    TutorDepositSettled,
)
from ..models.escrow import Escrow, TutorDeposit
from ..models.tutor_class import ClassAssign, TutorClass
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import CommissionService, calculate_commission, quantize_money
from .wallet_service import LedgerReference, WalletService

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class EscrowService(BaseService):
    def __init__(
        self,
        db: Session,
        wallet_service: Optional[WalletService] = None,
        commission_service: Optional[CommissionService] = None,
    ):
        super().__init__(db)
        self.escrow_repository = RepositoryFactory.create_escrow_repository(db)
        self.deposit_repository = RepositoryFactory.create_tutor_deposit_repository(db)
        self.class_repository = RepositoryFactory.create_class_repository(db)
        self.assign_repository = RepositoryFactory.create_class_assign_repository(db)
        self.wallet_service = wallet_service or WalletService(db)
        self.commission_service = commission_service or CommissionService(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))

    def get_escrow(self, escrow_id: str) -> Escrow:
        escrow = self.escrow_repository.get_by_id(escrow_id)
        if escrow is None:
            raise NotFoundException(f"Escrow {escrow_id} not found")
        return escrow

    def list_for_class(self, class_id: str) -> List[Escrow]:
        return self.escrow_repository.list_for_class(class_id)

    # -------------------------------------------------------------------- pay
    @BaseService.measure_operation("pay_escrow")
    def pay_escrow(
        self,
        class_id: str,
        student_id: str,
        *,
        payer_user_id: Optional[str] = None,
        gross_amount: Optional[Union[Decimal, int, str]] = None,
        use_transaction: bool = True,
    ) -> Escrow:
        """
        Hold a student's payment for a class.

        ``payer_user_id`` defaults to the student. ``gross_amount`` defaults to
        the class price and, when given, must equal it.
        """

        def _pay() -> Escrow:
            tutor_class = self.class_repository.get_for_update(class_id)
            if tutor_class is None:
                raise NotFoundException(f"Class {class_id} not found")
            if tutor_class.is_terminal:
                raise BusinessRuleException(
                    f"Class {class_id} is {tutor_class.status.value} and no longer accepts payment",
                    code="CLASS_NOT_PAYABLE",
                )
            assign = self.assign_repository.get_for_class_student(class_id, student_id)
            if assign is None:
                raise NotFoundException(f"Student {student_id} is not enrolled in class {class_id}")
            if assign.approval_status == ApprovalStatus.REJECTED:
                raise BusinessRuleException("Enrollment was rejected", code="ENROLLMENT_REJECTED")
            if assign.payment_status == PaymentStatus.PAID:
                raise BusinessRuleException("Enrollment is already paid", code="ALREADY_PAID")
            if self.escrow_repository.find_held_for_assign(assign.id) is not None:
                raise BusinessRuleException("Enrollment already has a held escrow", code="ALREADY_PAID")

            gross = quantize_money(tutor_class.price)
            if gross <= 0:
                raise ValidationException("Escrow amount must be positive", details={"gross": str(gross)})
            if gross_amount is not None and quantize_money(gross_amount) != gross:
                raise ValidationException(
                    "Payment amount does not match the class price",
                    code="AMOUNT_MISMATCH",
                    details={"amount": str(quantize_money(gross_amount)), "price": str(gross)},
                )

            breakdown = calculate_commission(
                tutor_class.delivery_mode, gross, self.commission_service.get_active_or_seed()
            )
            payer = payer_user_id or student_id
            payer_wallet = self.wallet_service.get_or_create_wallet(payer)
            escrow_wallet = self.wallet_service.escrow_wallet()
            now = self.now()

            try:
                with self.db.begin_nested():
                    escrow = self.escrow_repository.create(
                        class_id=class_id,
                        class_assign_id=assign.id,
                        payer_user_id=payer,
                        student_id=student_id,
                        tutor_id=tutor_class.tutor_id,
                        gross_amount=gross,
                        commission_rate_snapshot=breakdown.rate,
                        commission_amount=breakdown.commission_amount,
                        status=EscrowStatus.HELD,
                        created_at=now,
                    )
            except RepositoryException as exc:
                raise BusinessRuleException(
                    "Enrollment already has a held escrow", code="ALREADY_PAID"
                ) from exc

            self.wallet_service.transfer(
                payer_wallet.id,
                escrow_wallet.id,
                gross,
                TransactionType.PAY_ESCROW,
                TransactionType.ESCROW_IN,
                reference=LedgerReference("escrow", escrow.id),
                note=f"Escrow for class {class_id}",
                use_transaction=False,
            )

            assign.payment_status = PaymentStatus.PAID
            if tutor_class.class_request_id and assign.approval_status == ApprovalStatus.PENDING:
                assign.approval_status = ApprovalStatus.APPROVED
                assign.approved_at = now
            self._recount(tutor_class)

            self.publisher.publish(
                EscrowPaid(
                    escrow_id=escrow.id,
                    class_id=class_id,
                    student_id=student_id,
                    gross_amount=gross,
                    paid_at=now,
                )
            )
            return escrow

        if use_transaction:
            with self.transaction():
                escrow = _pay()
        else:
            escrow = _pay()
        prometheus_metrics.record_escrow_operation("pay")
        logger.info(
            "Escrow %s held %s for class %s",
            escrow.id,
            escrow.gross_amount,
            class_id,
            extra={"escrow_id": escrow.id, "class_id": class_id, "student_id": student_id},
        )
        return escrow

    # ---------------------------------------------------------------- release
    @BaseService.measure_operation("release_escrow")
    def release_escrow(self, escrow_id: str, *, use_transaction: bool = True) -> Escrow:
        """Pay out a held escrow: net to the tutor, commission to the platform."""

        def _release() -> Escrow:
            escrow = self._lock_escrow(escrow_id)
            now = self.now()
            gross = quantize_money(escrow.gross_amount)
            commission = quantize_money(escrow.commission_amount)
            escrow.mark_released(gross, now)
            self._pay_out(escrow, gross - commission, commission)
            self.publisher.publish(
                EscrowReleased(
                    escrow_id=escrow.id,
                    class_id=escrow.class_id,
                    tutor_id=escrow.tutor_id,
                    net_amount=gross - commission,
                    commission_amount=commission,
                    released_at=now,
                )
            )
            return escrow

        if use_transaction:
            with self.transaction():
                escrow = _release()
        else:
            escrow = _release()
        prometheus_metrics.record_escrow_operation("release")
        logger.info("Escrow %s released", escrow_id, extra={"escrow_id": escrow_id})
        return escrow

    # ----------------------------------------------------------------- refund
    @BaseService.measure_operation("refund_escrow")
    def refund_escrow(
        self,
        escrow_id: str,
        fraction: Union[Decimal, int, str] = Decimal("1"),
        *,
        reason: Optional[CancellationReason] = None,
        use_transaction: bool = True,
    ) -> Escrow:
        """
        Return ``round(gross * fraction)`` to the payer.

        The remainder goes to tutor and platform by the commission snapshot.
        A zero fraction settles the escrow as RELEASED.
        """
        share = Decimal(str(fraction))
        if share < 0 or share > 1:
            raise ValidationException("Refund fraction must be between 0 and 1", details={"fraction": str(share)})

        def _refund() -> Escrow:
            escrow = self._lock_escrow(escrow_id)
            now = self.now()
            gross = quantize_money(escrow.gross_amount)
            refund_amount = quantize_money(gross * share)
            retained = gross - refund_amount

            if refund_amount == ZERO:
                commission = quantize_money(escrow.commission_amount)
                escrow.mark_released(gross, now)
                self._pay_out(escrow, gross - commission, commission)
                self.publisher.publish(
                    EscrowReleased(
                        escrow_id=escrow.id,
                        class_id=escrow.class_id,
                        tutor_id=escrow.tutor_id,
                        net_amount=gross - commission,
                        commission_amount=commission,
                        released_at=now,
                    )
                )
                return escrow

            escrow.mark_refunded(refund_amount, retained, now)
            payer_wallet = self.wallet_service.get_or_create_wallet(escrow.payer_user_id)
            escrow_wallet = self.wallet_service.escrow_wallet()
            retained_commission = quantize_money(retained * Decimal(escrow.commission_rate_snapshot))
            tutor_wallet = self.wallet_service.get_or_create_wallet(escrow.tutor_id)
            platform_wallet = self.wallet_service.platform_wallet()
            self.wallet_service.lock(
                [escrow_wallet.id, payer_wallet.id, tutor_wallet.id, platform_wallet.id]
            )
            self.wallet_service.transfer(
                escrow_wallet.id,
                payer_wallet.id,
                refund_amount,
                TransactionType.REFUND_OUT,
                TransactionType.REFUND_IN,
                reference=LedgerReference("escrow", escrow.id),
                note=f"Refund ({reason.value if reason else 'manual'})",
                use_transaction=False,
            )
            if retained > ZERO:
                self._pay_out(escrow, retained - retained_commission, retained_commission)
            self._mark_assign(escrow, PaymentStatus.REFUNDED)

            self.publisher.publish(
                EscrowRefunded(
                    escrow_id=escrow.id,
                    class_id=escrow.class_id,
                    payer_user_id=escrow.payer_user_id,
                    refunded_amount=refund_amount,
                    released_amount=retained,
                    reason=reason.value if reason else None,
                    refunded_at=now,
                )
            )
            return escrow

        if use_transaction:
            with self.transaction():
                escrow = _refund()
        else:
            escrow = _refund()
        prometheus_metrics.record_escrow_operation(
            "refund" if escrow.status == EscrowStatus.REFUNDED else "forfeit"
        )
        logger.info(
            "Escrow %s settled as %s (refunded %s)",
            escrow_id,
            escrow.status.value,
            escrow.refunded_amount,
            extra={"escrow_id": escrow_id, "fraction": str(share)},
        )
        return escrow

    # ---------------------------------------------------------- tutor deposit
    def get_held_deposit(self, class_id: str) -> Optional[TutorDeposit]:
        return self.deposit_repository.find_held_for_class(class_id)

    def list_deposits(self, class_id: str) -> List[TutorDeposit]:
        return self.deposit_repository.list_for_class(class_id)

    @BaseService.measure_operation("hold_tutor_deposit")
    def hold_tutor_deposit(self, class_id: str, tutor_id: str, *, use_transaction: bool = True) -> TutorDeposit:
        """
        Move ``price * tutor_deposit_rate`` from the tutor's wallet into escrow.

        Only for online classes with a positive price that already hold at
        least one student payment. A class holds at most one deposit.
        """

        def _hold() -> TutorDeposit:
            tutor_class = self.class_repository.get_for_update(class_id)
            if tutor_class is None:
                raise NotFoundException(f"Class {class_id} not found")
            if tutor_class.tutor_id != tutor_id:
                raise ForbiddenException("Only the class tutor can place its deposit")
            if tutor_class.is_terminal:
                raise BusinessRuleException(
                    f"Class {class_id} is {tutor_class.status.value}", code="CLASS_CLOSED"
                )
            if ClassMode(tutor_class.mode) != ClassMode.ONLINE:
                raise BusinessRuleException(
                    "Only online classes take a tutor deposit", code="DEPOSIT_NOT_APPLICABLE"
                )
            if self.deposit_repository.find_held_for_class(class_id) is not None:
                raise BusinessRuleException("Class already holds a tutor deposit", code="DEPOSIT_ALREADY_HELD")
            if not self.escrow_repository.lock_held_for_class(class_id):
                raise BusinessRuleException(
                    "No student payment is held for this class yet", code="NO_HELD_ESCROW"
                )

            rate = Decimal(str(settings.tutor_deposit_rate))
            amount = quantize_money(Decimal(tutor_class.price) * rate)
            if amount <= 0:
                raise BusinessRuleException(
                    "Deposit amount must be positive", code="DEPOSIT_NOT_APPLICABLE", details={"amount": str(amount)}
                )

            now = self.now()
            tutor_wallet = self.wallet_service.get_or_create_wallet(tutor_id)
            escrow_wallet = self.wallet_service.escrow_wallet()
            try:
                with self.db.begin_nested():
                    deposit = self.deposit_repository.create(
                        class_id=class_id,
                        tutor_id=tutor_id,
                        amount=amount,
                        rate_snapshot=rate,
                        status=TutorDepositStatus.HELD,
                        created_at=now,
                    )
            except RepositoryException as exc:
                raise BusinessRuleException(
                    "Class already holds a tutor deposit", code="DEPOSIT_ALREADY_HELD"
                ) from exc

            self.wallet_service.transfer(
                tutor_wallet.id,
                escrow_wallet.id,
                amount,
                TransactionType.TUTOR_DEPOSIT_OUT,
                TransactionType.TUTOR_DEPOSIT_IN,
                reference=LedgerReference("tutor_deposit", deposit.id),
                note=f"Tutor deposit for class {class_id}",
                use_transaction=False,
            )
            self.publisher.publish(
                TutorDepositHeld(
                    deposit_id=deposit.id,
                    class_id=class_id,
                    tutor_id=tutor_id,
                    amount=amount,
                    held_at=now,
                )
            )
            return deposit

        if use_transaction:
            with self.transaction():
                deposit = _hold()
        else:
            deposit = _hold()
        prometheus_metrics.record_escrow_operation("deposit_hold")
        logger.info(
            "Tutor deposit %s of %s held for class %s",
            deposit.id,
            deposit.amount,
            class_id,
            extra={"deposit_id": deposit.id, "class_id": class_id, "tutor_id": tutor_id},
        )
        return deposit

    @BaseService.measure_operation("refund_tutor_deposit")
    def refund_tutor_deposit(self, deposit_id: str, *, use_transaction: bool = True) -> TutorDeposit:
        """Return a held deposit to the tutor."""

        def _refund() -> TutorDeposit:
            deposit = self._lock_deposit(deposit_id)
            now = self.now()
            deposit.mark_refunded(now)
            escrow_wallet = self.wallet_service.escrow_wallet()
            tutor_wallet = self.wallet_service.get_or_create_wallet(deposit.tutor_id)
            self.wallet_service.transfer(
                escrow_wallet.id,
                tutor_wallet.id,
                quantize_money(deposit.amount),
                TransactionType.DEPOSIT_RETURN_OUT,
                TransactionType.DEPOSIT_RETURN_IN,
                reference=LedgerReference("tutor_deposit", deposit.id),
                note=f"Deposit returned for class {deposit.class_id}",
                use_transaction=False,
            )
            self._publish_deposit_settled(deposit, None, now)
            return deposit

        if use_transaction:
            with self.transaction():
                deposit = _refund()
        else:
            deposit = _refund()
        prometheus_metrics.record_escrow_operation("deposit_refund")
        logger.info("Tutor deposit %s returned", deposit_id, extra={"deposit_id": deposit_id})
        return deposit

    @BaseService.measure_operation("forfeit_tutor_deposit")
    def forfeit_tutor_deposit(
        self,
        deposit_id: str,
        reason: Union[CancellationReason, str],
        *,
        recipients: Optional[Sequence[str]] = None,
        use_transaction: bool = True,
    ) -> TutorDeposit:
        """
        Forfeit a held deposit.

        With ``recipients`` the amount is split evenly between them, leftover
        cents going to the first ones; without, the platform keeps it.
        """
        forfeit_reason = CancellationReason(reason)
        payees = list(dict.fromkeys(recipients or []))

        def _forfeit() -> TutorDeposit:
            deposit = self._lock_deposit(deposit_id)
            now = self.now()
            deposit.mark_forfeited(forfeit_reason, now)
            amount = quantize_money(deposit.amount)
            escrow_wallet = self.wallet_service.escrow_wallet()
            if payees:
                targets = [self.wallet_service.get_or_create_wallet(user_id) for user_id in payees]
            else:
                targets = [self.wallet_service.platform_wallet()]
            self.wallet_service.lock([escrow_wallet.id] + [wallet.id for wallet in targets])

            for wallet, share in zip(targets, split_evenly(amount, len(targets))):
                if share <= ZERO:
                    continue
                self.wallet_service.transfer(
                    escrow_wallet.id,
                    wallet.id,
                    share,
                    TransactionType.DEPOSIT_FORFEIT_OUT,
                    TransactionType.DEPOSIT_FORFEIT_IN,
                    reference=LedgerReference("tutor_deposit", deposit.id),
                    note=f"Forfeited deposit for class {deposit.class_id} ({forfeit_reason.value})",
                    use_transaction=False,
                )
            self._publish_deposit_settled(deposit, forfeit_reason, now)
            return deposit

        if use_transaction:
            with self.transaction():
                deposit = _forfeit()
        else:
            deposit = _forfeit()
        prometheus_metrics.record_escrow_operation("deposit_forfeit")
        logger.info(
            "Tutor deposit %s forfeited (%s) to %s",
            deposit_id,
            forfeit_reason.value,
            payees or "platform",
            extra={"deposit_id": deposit_id},
        )
        return deposit

    # ---------------------------------------------------------------- helpers
    def _lock_escrow(self, escrow_id: str) -> Escrow:
        escrow = self.escrow_repository.get_for_update(escrow_id)
        if escrow is None:
            raise NotFoundException(f"Escrow {escrow_id} not found")
        if EscrowStatus(escrow.status).is_terminal:
            raise StateTransitionException("Escrow", escrow.id, escrow.status.value, "settled")
        return escrow

    def _pay_out(self, escrow: Escrow, net: Decimal, commission: Decimal) -> None:
        escrow_wallet = self.wallet_service.escrow_wallet()
        tutor_wallet = self.wallet_service.get_or_create_wallet(escrow.tutor_id)
        platform_wallet = self.wallet_service.platform_wallet()
        self.wallet_service.lock([escrow_wallet.id, tutor_wallet.id, platform_wallet.id])
        reference = LedgerReference("escrow", escrow.id)
        if net > ZERO:
            self.wallet_service.transfer(
                escrow_wallet.id,
                tutor_wallet.id,
                net,
                TransactionType.PAYOUT_OUT,
                TransactionType.PAYOUT_IN,
                reference=reference,
                note=f"Payout for class {escrow.class_id}",
                use_transaction=False,
            )
        if commission > ZERO:
            self.wallet_service.transfer(
                escrow_wallet.id,
                platform_wallet.id,
                commission,
                TransactionType.PAYOUT_OUT,
                TransactionType.COMMISSION,
                reference=reference,
                note=f"Commission for class {escrow.class_id}",
                use_transaction=False,
            )

    def _mark_assign(self, escrow: Escrow, payment_status: PaymentStatus) -> None:
        assign: Optional[ClassAssign] = self.assign_repository.get_by_id(escrow.class_assign_id)
        if assign is None:
            return
        assign.payment_status = payment_status
        tutor_class = self.class_repository.get_by_id(escrow.class_id)
        if tutor_class is not None:
            self._recount(tutor_class)

    def _recount(self, tutor_class: TutorClass) -> None:
        """Refresh ``current_student_count`` from the roster; reject overfilling."""
        self.assign_repository.flush()
        count = self.assign_repository.count_roster(tutor_class.id)
        if count > tutor_class.student_limit:
            raise BusinessRuleException(
                f"Class {tutor_class.id} is full",
                code="CLASS_FULL",
                details={"student_limit": tutor_class.student_limit},
            )
        tutor_class.current_student_count = count
        self.class_repository.flush()

    def _lock_deposit(self, deposit_id: str) -> TutorDeposit:
        deposit = self.deposit_repository.get_for_update(deposit_id)
        if deposit is None:
            raise NotFoundException(f"Tutor deposit {deposit_id} not found")
        if TutorDepositStatus(deposit.status).is_terminal:
            raise StateTransitionException("TutorDeposit", deposit.id, deposit.status.value, "settled")
        return deposit

    def _publish_deposit_settled(
        self, deposit: TutorDeposit, reason: Optional[CancellationReason], at: datetime
    ) -> None:
        self.publisher.publish(
            TutorDepositSettled(
                deposit_id=deposit.id,
                class_id=deposit.class_id,
                tutor_id=deposit.tutor_id,
                status=TutorDepositStatus(deposit.status).value,
                amount=quantize_money(deposit.amount),
                reason=reason.value if reason else None,
                settled_at=at,
            )
        )


def split_evenly(amount: Decimal, parts: int) -> List[Decimal]:
    """Split ``amount`` into ``parts`` cent-exact shares that add back up to it."""
    if parts < 1:
        raise ValueError("parts must be at least 1")
    cents = int(quantize_money(amount) * 100)
    base, extra = divmod(cents, parts)
    return [Decimal(base + (1 if index < extra else 0)) / 100 for index in range(parts)]
