"""Deterministic price breakdown for a stay."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from staybook.config import section
from staybook.errors import InvalidDateRange

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: int
    nights: int
    service_fee: int
    cleaning_fee: int
    taxes: int

    @property
    def total_price(self) -> int:
        return self.base_price + self.service_fee + self.cleaning_fee + self.taxes


def _round_unit(amount: Decimal) -> int:
    """Round to the nearest whole currency unit, ties away from zero."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def count_nights(check_in: date | datetime, check_out: date | datetime) -> int:
    """Whole nights between two instants, rounding partial days up."""
    delta = check_out - check_in
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def amount_minor_units(amount: float | int | Decimal) -> int:
    """Convert a currency amount to the smallest currency unit (cents)."""
    return _round_unit(Decimal(str(amount)) * 100)


class PricingCalculator:
    """Applies the fee rules in order, rounding after every step."""

    def __init__(
        self,
        service_fee_rate: float | str | Decimal = "0.10",
        cleaning_fee: int = 50,
        tax_rate: float | str | Decimal = "0.08",
    ) -> None:
        self.service_fee_rate = Decimal(str(service_fee_rate))
        self.cleaning_fee = int(cleaning_fee)
        self.tax_rate = Decimal(str(tax_rate))

    @classmethod
    def from_settings(cls) -> PricingCalculator:
        cfg = section("pricing")
        return cls(
            service_fee_rate=cfg.get("service_fee_rate", "0.10"),
            cleaning_fee=cfg.get("cleaning_fee", 50),
            tax_rate=cfg.get("tax_rate", "0.08"),
        )

    def compute_price(
        self,
        nightly_rate: float | int | Decimal,
        check_in: date | datetime,
        check_out: date | datetime,
    ) -> PriceBreakdown:
        nights = count_nights(check_in, check_out)
        if nights <= 0:
            raise InvalidDateRange("Check-out date must be after check-in date")

        base_price = _round_unit(Decimal(str(nightly_rate)) * nights)
        service_fee = _round_unit(base_price * self.service_fee_rate)
        cleaning_fee = self.cleaning_fee
        taxes = _round_unit((base_price + service_fee + cleaning_fee) * self.tax_rate)
        return PriceBreakdown(
            base_price=base_price,
            nights=nights,
            service_fee=service_fee,
            cleaning_fee=cleaning_fee,
            taxes=taxes,
        )


def compute_price(
    nightly_rate: float | int | Decimal,
    check_in: date | datetime,
    check_out: date | datetime,
) -> PriceBreakdown:
    """Price a stay with the default fee rules."""
    return PricingCalculator().compute_price(nightly_rate, check_in, check_out)
