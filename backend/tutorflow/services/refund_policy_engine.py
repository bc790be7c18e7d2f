"""Refund fraction, deposit outcome and late-cancellation rules for class cancellations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence, Tuple

from tutorflow.core.config import settings
from tutorflow.core.enums import CancellationReason, TutorDepositStatus
from tutorflow.core.timezone_utils import ensure_utc

ONE = Decimal("1")
ZERO = Decimal("0")


@dataclass(frozen=True)
class RefundPolicyResult:
    fraction: Decimal
    policy_basis: str
    reason: CancellationReason

    @property
    def is_full(self) -> bool:
        return self.fraction == ONE


class RefundPolicyEngine:
    """Maps a cancellation reason and the class's progress to a refund fraction."""

    def __init__(
        self,
        reason_table: Optional[Mapping[str, Decimal]] = None,
        grace_tiers: Optional[Sequence[Tuple[int, Decimal]]] = None,
        deposit_forfeit_reasons: Optional[Iterable[str]] = None,
        late_cancellation_reasons: Optional[Iterable[str]] = None,
        cancellation_lock_threshold: Optional[Decimal] = None,
    ):
        self.reason_table = dict(reason_table if reason_table is not None else settings.refund_policy)
        tiers = grace_tiers if grace_tiers is not None else settings.student_cancellation_grace_tiers
        self.grace_tiers = sorted(
            ((int(hours), Decimal(fraction)) for hours, fraction in tiers),
            key=lambda tier: tier[0],
            reverse=True,
        )
        self.deposit_forfeit_reasons = frozenset(
            CancellationReason(reason)
            for reason in (
                deposit_forfeit_reasons if deposit_forfeit_reasons is not None else settings.deposit_forfeit_reasons
            )
        )
        self.late_cancellation_reasons = frozenset(
            CancellationReason(reason)
            for reason in (
                late_cancellation_reasons
                if late_cancellation_reasons is not None
                else settings.late_cancellation_reasons
            )
        )
        self.cancellation_lock_threshold = Decimal(
            str(
                cancellation_lock_threshold
                if cancellation_lock_threshold is not None
                else settings.cancellation_lock_threshold
            )
        )

    def evaluate(
        self,
        reason: CancellationReason,
        *,
        now: datetime,
        first_lesson_start: Optional[datetime],
        total_lessons: int,
        taught_lessons: int,
    ) -> RefundPolicyResult:
        reason = CancellationReason(reason)

        if reason in (CancellationReason.STUDENT_INITIATED, CancellationReason.TUTOR_FAULT):
            if total_lessons > 0 and taught_lessons > 0:
                untaught = max(total_lessons - taught_lessons, 0)
                fraction = (Decimal(untaught) / Decimal(total_lessons)).quantize(Decimal("0.0001"))
                return RefundPolicyResult(
                    fraction=fraction,
                    policy_basis=f"{taught_lessons}/{total_lessons} lessons taught: untaught share refunded",
                    reason=reason,
                )

        if reason == CancellationReason.STUDENT_INITIATED:
            return self._student_grace(now, first_lesson_start, reason)

        fraction = Decimal(self.reason_table.get(reason.value, ONE))
        return RefundPolicyResult(
            fraction=fraction,
            policy_basis=f"{reason.value}: {fraction * 100:.0f}% refund",
            reason=reason,
        )

    def deposit_outcome(self, reason: CancellationReason) -> TutorDepositStatus:
        """FORFEITED when the tutor is to blame, otherwise REFUNDED to the tutor."""
        if CancellationReason(reason) in self.deposit_forfeit_reasons:
            return TutorDepositStatus.FORFEITED
        return TutorDepositStatus.REFUNDED

    def allows_cancellation(self, reason: CancellationReason, *, total_lessons: int, taught_lessons: int) -> bool:
        """
        Once the taught share reaches the lock threshold only a reason in
        ``late_cancellation_reasons`` may still cancel.
        """
        if total_lessons <= 0 or CancellationReason(reason) in self.late_cancellation_reasons:
            return True
        return Decimal(taught_lessons) / Decimal(total_lessons) < self.cancellation_lock_threshold

    def _student_grace(
        self,
        now: datetime,
        first_lesson_start: Optional[datetime],
        reason: CancellationReason,
    ) -> RefundPolicyResult:
        if first_lesson_start is None or not self.grace_tiers:
            return RefundPolicyResult(ONE, "No lessons scheduled: full refund", reason)

        hours_before = (ensure_utc(first_lesson_start) - ensure_utc(now)).total_seconds() / 3600
        for min_hours, fraction in self.grace_tiers:
            if hours_before >= min_hours:
                return RefundPolicyResult(
                    fraction,
                    f">={min_hours} hours before first lesson: {fraction * 100:.0f}% refund",
                    reason,
                )
        # First lesson already under way: the least generous tier applies.
        min_hours, fraction = self.grace_tiers[-1]
        return RefundPolicyResult(
            fraction, f"First lesson already started: {fraction * 100:.0f}% refund", reason
        )
