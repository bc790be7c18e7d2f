# backend/tutorflow/services/commission_service.py
"""
Commission calculation and configuration.

``calculate_commission`` is pure: the active configuration is looked up by
the caller and passed in, never read from process-wide state.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Dict, Mapping, Optional, Protocol, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ClassMode, DeliveryMode
from ..core.exceptions import ValidationException
from ..models.escrow import CommissionConfig
from ..repositories import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class CommissionRates(Protocol):
    def rate_for(self, mode: DeliveryMode) -> Decimal: ...


@dataclass(frozen=True)
class CommissionBreakdown:
    mode: DeliveryMode
    gross_amount: Decimal
    rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal


def quantize_money(amount: Union[Decimal, int, str]) -> Decimal:
    """Round half-up to two decimal places."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def delivery_mode_for(student_limit: int, mode: Union[ClassMode, str]) -> DeliveryMode:
    online = ClassMode(mode) == ClassMode.ONLINE
    if student_limit == 1:
        return DeliveryMode.ONE_TO_ONE_ONLINE if online else DeliveryMode.ONE_TO_ONE_OFFLINE
    return DeliveryMode.GROUP_ONLINE if online else DeliveryMode.GROUP_OFFLINE


def calculate_commission(
    mode: Union[DeliveryMode, str],
    gross_amount: Union[Decimal, int, str],
    config: CommissionRates,
) -> CommissionBreakdown:
    """
    Split ``gross_amount`` into platform commission and tutor net.

    ``commission + net == gross`` exactly; rounding lands on the commission.
    """
    delivery_mode = DeliveryMode(mode)
    gross = quantize_money(gross_amount)
    if gross < 0:
        raise ValidationException("Gross amount must not be negative", details={"gross": str(gross)})
    rate = Decimal(config.rate_for(delivery_mode))
    if rate < 0 or rate > 1:
        raise ValidationException(
            f"Commission rate for {delivery_mode.value} is outside [0, 1]",
            details={"rate": str(rate)},
        )
    commission = quantize_money(gross * rate)
    return CommissionBreakdown(
        mode=delivery_mode,
        gross_amount=gross,
        rate=rate,
        commission_amount=commission,
        net_amount=gross - commission,
    )


class CommissionService(BaseService):
    """Lookup and rotation of the single active commission configuration."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.repository = RepositoryFactory.create_commission_repository(db)

    def get_active(self) -> Optional[CommissionConfig]:
        return self.repository.get_active()

    def get_active_or_seed(self) -> CommissionConfig:
        """Active row, creating one from configured defaults on first use. Does not commit."""
        active = self.repository.get_active()
        if active is not None:
            return active
        logger.info("No active commission configuration; seeding defaults")
        return self.repository.create(
            is_active=True, created_by="system", **self._validated(settings.default_commission_rates)
        )

    @BaseService.measure_operation("activate_commission_config")
    def activate(
        self,
        rates: Mapping[Union[DeliveryMode, str], Union[Decimal, str, float]],
        created_by: Optional[str] = None,
        *,
        use_transaction: bool = True,
    ) -> CommissionConfig:
        """Replace the active configuration with ``rates`` (all four modes required)."""
        values = self._validated(rates)
        with self.maybe_transaction(use_transaction):
            deactivated = self.repository.deactivate_all()
            config = self.repository.create(is_active=True, created_by=created_by, **values)
        logger.info(
            "Activated commission config %s (replaced %d) by %s", config.id, deactivated, created_by
        )
        return config

    @staticmethod
    def _validated(rates: Mapping) -> Dict[str, Decimal]:
        values: Dict[str, Decimal] = {}
        for key, raw in rates.items():
            try:
                mode = DeliveryMode(key)
            except ValueError as exc:
                raise ValidationException(f"Unknown delivery mode: {key!r}") from exc
            rate = Decimal(str(raw))
            if rate < 0 or rate > 1:
                raise ValidationException(
                    f"Commission rate for {mode.value} must be between 0 and 1",
                    details={"mode": mode.value, "rate": str(rate)},
                )
            values[mode.value] = rate
        missing = {mode.value for mode in DeliveryMode} - set(values)
        if missing:
            raise ValidationException(
                "Commission rates missing for: " + ", ".join(sorted(missing)),
                details={"missing": sorted(missing)},
            )
        return values
