"""Commission split and delivery-mode bucketing."""

from decimal import Decimal

import pytest

from tutorflow.core.enums import ClassMode, DeliveryMode
from tutorflow.core.exceptions import ValidationException
from tutorflow.services.commission_service import (
    calculate_commission,
    delivery_mode_for,
    quantize_money,
)


class _Rates:
    def __init__(self, **rates: str):
        self.rates = {DeliveryMode(mode): Decimal(rate) for mode, rate in rates.items()}

    def rate_for(self, mode: DeliveryMode) -> Decimal:
        return self.rates[mode]


DEFAULT_RATES = _Rates(
    one_to_one_online="0.12",
    one_to_one_offline="0.15",
    group_online="0.10",
    group_offline="0.12",
)


def test_commission_and_net_split_the_gross():
    breakdown = calculate_commission(DeliveryMode.ONE_TO_ONE_ONLINE, "800", DEFAULT_RATES)

    assert breakdown.commission_amount == Decimal("96.00")
    assert breakdown.net_amount == Decimal("704.00")
    assert breakdown.rate == Decimal("0.12")


@pytest.mark.parametrize("gross", ["333.33", "0.01", "1234.57", "99.99"])
def test_rounding_never_loses_a_cent(gross):
    breakdown = calculate_commission(DeliveryMode.ONE_TO_ONE_OFFLINE, gross, DEFAULT_RATES)

    assert breakdown.commission_amount + breakdown.net_amount == Decimal(gross)


def test_rounding_is_half_up_on_the_commission():
    # 333.33 * 0.15 = 49.9995
    breakdown = calculate_commission(DeliveryMode.ONE_TO_ONE_OFFLINE, "333.33", DEFAULT_RATES)

    assert breakdown.commission_amount == Decimal("50.00")
    assert breakdown.net_amount == Decimal("283.33")


def test_rate_outside_unit_interval_is_rejected():
    with pytest.raises(ValidationException):
        calculate_commission(DeliveryMode.GROUP_ONLINE, "100", _Rates(group_online="1.5"))


def test_negative_gross_is_rejected():
    with pytest.raises(ValidationException):
        calculate_commission(DeliveryMode.GROUP_ONLINE, "-1", DEFAULT_RATES)


@pytest.mark.parametrize(
    "limit,mode,expected",
    [
        (1, ClassMode.ONLINE, DeliveryMode.ONE_TO_ONE_ONLINE),
        (1, ClassMode.OFFLINE, DeliveryMode.ONE_TO_ONE_OFFLINE),
        (6, ClassMode.ONLINE, DeliveryMode.GROUP_ONLINE),
        (6, "offline", DeliveryMode.GROUP_OFFLINE),
    ],
)
def test_delivery_mode_follows_class_size_and_mode(limit, mode, expected):
    assert delivery_mode_for(limit, mode) == expected


def test_quantize_money_rounds_half_up():
    assert quantize_money("0.125") == Decimal("0.13")
    assert quantize_money(Decimal("2.344")) == Decimal("2.34")
