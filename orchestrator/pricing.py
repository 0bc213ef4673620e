"""Stay pricing, negotiation floor and fiat -> native unit conversion."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Optional

from common.clients import PropertyInfo
from common.errors import InvalidPriceError, ValidationError

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")

# (minimum nights exclusive, default percent, discount plan attribute)
LONG_STAY_TIERS = (
    (30, Decimal("20"), "one_month"),
    (15, Decimal("15"), "fifteen_days"),
    (5, Decimal("10"), "five_days"),
)


@dataclass(frozen=True)
class StayQuote:
    nights: int
    nightly_price: Decimal
    gross_price: Decimal
    discount_percent: Decimal
    base_price: Decimal


def long_stay_discount_percent(nights: int, prop: PropertyInfo) -> Decimal:
    if not prop.discount_enabled:
        return Decimal("0")
    for min_nights, default_percent, plan_field in LONG_STAY_TIERS:
        if nights > min_nights:
            override: Optional[Decimal] = getattr(prop.discount_plan, plan_field, None) if prop.discount_plan else None
            percent = override if override is not None else default_percent
            return min(max(percent, Decimal("0")), HUNDRED)
    return Decimal("0")


def quote_stay(prop: PropertyInfo, check_in: date, check_out: date) -> StayQuote:
    nights = (check_out - check_in).days
    if nights <= 0:
        raise ValidationError("checkOutDate must be after checkInDate")
    gross = (prop.nightly_price * nights).quantize(CENTS, rounding=ROUND_HALF_UP)
    percent = long_stay_discount_percent(nights, prop)
    discount = (gross * percent / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)
    return StayQuote(
        nights=nights,
        nightly_price=prop.nightly_price,
        gross_price=gross,
        discount_percent=percent,
        base_price=gross - discount,
    )


def negotiation_floor(base_price: Decimal, bound_percent: Decimal) -> Decimal:
    """Lowest acceptable price: base x (1 - bound/100), unrounded."""
    bound = min(max(Decimal(bound_percent), Decimal("0")), HUNDRED)
    return Decimal(base_price) * (1 - bound / HUNDRED)


def validate_offer_price(price: Decimal, base_price: Decimal, bound_percent: Decimal) -> None:
    floor = negotiation_floor(base_price, bound_percent)
    if price < floor:
        raise ValidationError(
            f"Offer {price} is below the negotiation floor {floor.quantize(CENTS, rounding=ROUND_HALF_UP)}"
        )
    if price > base_price:
        raise ValidationError(f"Offer {price} exceeds the base price {base_price}")


def to_smallest_unit(price: Decimal, rate: Decimal, decimals: int = 18) -> int:
    """Convert a fiat price to the chain's smallest unit, rounding down.

    `rate` is the number of fiat units per one native coin.
    """
    if price <= 0:
        raise InvalidPriceError("Price must be greater than zero")
    if rate <= 0:
        raise InvalidPriceError("Conversion rate must be greater than zero")
    scaled = Decimal(price).scaleb(decimals) / Decimal(rate)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))
