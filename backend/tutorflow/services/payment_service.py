# backend/tutorflow/services/payment_service.py
"""
Payment Service

Bridges the external payment gateway and the wallet ledger:
- ``request_payment`` records the charge, commits, then asks the gateway
- ``confirm_payment`` handles the gateway's confirmation, which may arrive
  more than once; only the first one moves money
- ``retry_unsettled_payments`` re-submits charges the gateway never took
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Optional, Protocol, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import GatewayPaymentStatus, PaymentContextType
from ..core.exceptions import DomainException, NotFoundException, ValidationException
from ..core.ulid_helper import generate_ulid
from ..models.escrow import Escrow
from ..models.payment import GatewayPayment
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .commission_service import quantize_money
from .escrow_service import EscrowService
from .wallet_service import LedgerReference, WalletService

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def settle_payment(self, context_type: str, context_id: str, amount: Decimal) -> str:
        """Submit a charge and return the gateway's payment id."""
        ...


@dataclass
class PaymentConfirmation:
    payment: GatewayPayment
    already_confirmed: bool = False
    escrow: Optional[Escrow] = None


@dataclass
class RetryResult:
    attempted: int = 0
    submitted: int = 0
    failed: int = 0


class PaymentService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        wallet_service: Optional[WalletService] = None,
        escrow_service: Optional[EscrowService] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.assign_repository = RepositoryFactory.create_class_assign_repository(db)
        self.class_repository = RepositoryFactory.create_class_repository(db)
        self.wallet_service = wallet_service or WalletService(db)
        self.escrow_service = escrow_service or EscrowService(db, wallet_service=self.wallet_service)

    def get_payment(self, context_id: str) -> GatewayPayment:
        payment = self.payment_repository.get_by_context_id(context_id)
        if payment is None:
            raise NotFoundException(f"No payment for context {context_id}")
        return payment

    @BaseService.measure_operation("request_payment")
    def request_payment(
        self,
        user_id: str,
        context_type: Union[PaymentContextType, str],
        amount: Union[Decimal, int, str],
        *,
        class_assign_id: Optional[str] = None,
    ) -> GatewayPayment:
        """
        Record a charge and submit it to the gateway.

        The row is committed before the gateway call, so a gateway failure
        leaves a PENDING row for ``retry_unsettled_payments`` instead of
        losing the request.
        """
        try:
            kind = PaymentContextType(context_type)
        except ValueError as exc:
            raise ValidationException(f"Unknown payment context: {context_type!r}") from exc
        value = quantize_money(amount)
        if value <= 0:
            raise ValidationException("Payment amount must be positive", details={"amount": str(value)})

        payment_id = generate_ulid()
        if kind == PaymentContextType.CLASS_ESCROW:
            if not class_assign_id:
                raise ValidationException("A class payment needs the enrollment id")
            assign = self.assign_repository.get_by_id(class_assign_id)
            if assign is None:
                raise NotFoundException(f"Enrollment {class_assign_id} not found")
            if assign.student_id != user_id:
                raise ValidationException("Only the enrolled student can pay for this enrollment")
            tutor_class = self.class_repository.get_by_id(assign.class_id)
            if tutor_class is None:
                raise NotFoundException(f"Class {assign.class_id} not found")
            price = quantize_money(tutor_class.price)
            if value != price:
                raise ValidationException(
                    "Payment amount does not match the class price",
                    code="AMOUNT_MISMATCH",
                    details={"amount": str(value), "price": str(price)},
                )
            context_id = class_assign_id
        else:
            context_id = payment_id

        with self.transaction():
            existing = self.payment_repository.get_by_context_id(context_id)
            if existing is not None and existing.status != GatewayPaymentStatus.FAILED:
                return existing
            if existing is not None:
                existing.status = GatewayPaymentStatus.PENDING
                existing.amount = value
                existing.attempt_count = 0
                existing.last_error = None
                payment = existing
            else:
                payment = self.payment_repository.create(
                    id=payment_id,
                    user_id=user_id,
                    context_type=kind,
                    context_id=context_id,
                    amount=value,
                    status=GatewayPaymentStatus.PENDING,
                    attempt_count=0,
                    created_at=self.now(),
                )

        self._submit(payment)
        return payment

    @BaseService.measure_operation("confirm_payment")
    def confirm_payment(self, context_id: str) -> PaymentConfirmation:
        """
        Apply a gateway confirmation.

        Repeated confirmations for the same context are no-ops. For a class
        payment the money is deposited and then moved into escrow; if the
        class can no longer take payment the deposit stays in the payer's
        wallet.
        """
        with self.transaction():
            payment = self.payment_repository.lock_by_context_id(context_id)
            if payment is None:
                raise NotFoundException(f"No payment for context {context_id}")
            if payment.status == GatewayPaymentStatus.PAID:
                logger.info("Payment %s already confirmed", payment.id)
                return PaymentConfirmation(payment=payment, already_confirmed=True)

            payment.status = GatewayPaymentStatus.PAID
            payment.confirmed_at = self.now()
            self.payment_repository.flush()
            self.wallet_service.deposit(
                payment.user_id,
                payment.amount,
                reference=LedgerReference("gateway_payment", payment.id),
                use_transaction=False,
            )

            escrow: Optional[Escrow] = None
            if payment.context_type == PaymentContextType.CLASS_ESCROW:
                escrow = self._hold_class_payment(payment)

        logger.info(
            "Payment %s confirmed for %s %s",
            payment.id,
            PaymentContextType(payment.context_type).value,
            context_id,
            extra={"payment_id": payment.id, "amount": str(payment.amount)},
        )
        return PaymentConfirmation(payment=payment, escrow=escrow)

    def retry_unsettled_payments(self, limit: int = 100) -> RetryResult:
        """Re-submit PENDING charges still under the attempt cap."""
        result = RetryResult()
        with self.transaction():
            pending = self.payment_repository.find_unsubmitted(settings.payment_max_attempts, limit)
        for payment in pending:
            result.attempted += 1
            if self._submit(payment):
                result.submitted += 1
            else:
                result.failed += 1
        if result.attempted:
            logger.info(
                "Payment retry: %d attempted, %d submitted, %d failed",
                result.attempted,
                result.submitted,
                result.failed,
            )
        return result

    # --------------------------------------------------------------- helpers
    def _hold_class_payment(self, payment: GatewayPayment) -> Optional[Escrow]:
        assign = self.assign_repository.get_by_id(payment.context_id)
        if assign is None:
            logger.warning("Payment %s confirmed for unknown enrollment %s", payment.id, payment.context_id)
            return None
        try:
            with self.db.begin_nested():
                return self.escrow_service.pay_escrow(
                    assign.class_id,
                    assign.student_id,
                    payer_user_id=payment.user_id,
                    gross_amount=payment.amount,
                    use_transaction=False,
                )
        except DomainException as exc:
            logger.warning(
                "Payment %s could not be escrowed for class %s (%s); funds kept in wallet",
                payment.id,
                assign.class_id,
                exc.message,
            )
            return None

    def _submit(self, payment: GatewayPayment) -> bool:
        """Call the gateway and record the outcome; True when it accepted the charge."""
        payment_id = payment.id
        try:
            gateway_id = self.gateway.settle_payment(
                PaymentContextType(payment.context_type).value, payment.context_id, Decimal(payment.amount)
            )
        except Exception as exc:
            with self.transaction():
                row = self.payment_repository.get_by_id(payment_id)
                row.attempt_count = (row.attempt_count or 0) + 1
                row.last_error = str(exc)[:1000]
                if row.attempt_count >= settings.payment_max_attempts:
                    row.status = GatewayPaymentStatus.FAILED
            logger.warning("Gateway rejected payment %s (attempt %d): %s", payment_id, row.attempt_count, exc)
            return False

        with self.transaction():
            row = self.payment_repository.get_by_id(payment_id)
            row.attempt_count = (row.attempt_count or 0) + 1
            row.gateway_payment_id = gateway_id
            row.last_error = None
            if row.status == GatewayPaymentStatus.PENDING:
                row.status = GatewayPaymentStatus.SUBMITTED
        logger.info("Payment %s submitted to gateway as %s", payment_id, gateway_id)
        return True
