"""Unit tests for stay pricing, the negotiation floor and unit conversion."""
from datetime import date
from decimal import Decimal

import pytest

from common.clients import PropertyInfo
from common.errors import InvalidPriceError, ValidationError
from orchestrator.pricing import (
    long_stay_discount_percent,
    negotiation_floor,
    quote_stay,
    to_smallest_unit,
    validate_offer_price,
)


def make_property(**overrides) -> PropertyInfo:
    payload = {
        "id": "villa-1",
        "ownerId": "host-1",
        "dailyPrice": "600",
        "negotiationPercentage": "10",
        "capacity": 4,
    }
    payload.update(overrides)
    return PropertyInfo.model_validate(payload)


class TestQuoteStay:
    """Test base price computation."""

    def test_five_nights_without_discount(self):
        quote = quote_stay(make_property(), date(2030, 1, 1), date(2030, 1, 6))

        assert quote.nights == 5
        assert quote.base_price == Decimal("3000.00")
        assert quote.discount_percent == 0

    def test_zero_nights_rejected(self):
        with pytest.raises(ValidationError):
            quote_stay(make_property(), date(2030, 1, 1), date(2030, 1, 1))

    def test_default_long_stay_tiers(self):
        """Test the 10/15/20 percent tiers for stays over 5/15/30 nights."""
        prop = make_property(discountEnabled=True)

        assert long_stay_discount_percent(5, prop) == 0
        assert long_stay_discount_percent(6, prop) == Decimal("10")
        assert long_stay_discount_percent(16, prop) == Decimal("15")
        assert long_stay_discount_percent(31, prop) == Decimal("20")

    def test_discount_plan_overrides_tier(self):
        prop = make_property(discountEnabled=True, discountPlan={"fifteenDays": "25"})

        assert long_stay_discount_percent(20, prop) == Decimal("25")
        assert long_stay_discount_percent(8, prop) == Decimal("10")

    def test_discount_ignored_when_disabled(self):
        prop = make_property(discountEnabled=False, discountPlan={"oneMonth": "40"})

        assert long_stay_discount_percent(45, prop) == 0

    def test_discounted_base_price(self):
        quote = quote_stay(make_property(discountEnabled=True), date(2030, 1, 1), date(2030, 1, 11))

        assert quote.gross_price == Decimal("6000.00")
        assert quote.base_price == Decimal("5400.00")


class TestNegotiationFloor:
    """Test the host-configured negotiation bound."""

    def test_reference_scenario(self):
        """600 x 5 nights with a 10 percent bound: 2600 refused, 2750 allowed."""
        base = Decimal("3000")

        assert negotiation_floor(base, Decimal("10")) == Decimal("2700")
        with pytest.raises(ValidationError):
            validate_offer_price(Decimal("2600"), base, Decimal("10"))
        validate_offer_price(Decimal("2750"), base, Decimal("10"))

    @pytest.mark.parametrize("bound", range(0, 101, 5))
    def test_floor_holds_for_every_bound(self, bound):
        base = Decimal("1234.56")
        floor = negotiation_floor(base, Decimal(bound))

        assert floor == base * (1 - Decimal(bound) / 100)
        validate_offer_price(floor, base, Decimal(bound))
        if floor > 0:
            with pytest.raises(ValidationError):
                validate_offer_price(floor - Decimal("0.01"), base, Decimal(bound))

    def test_price_above_base_rejected(self):
        with pytest.raises(ValidationError):
            validate_offer_price(Decimal("3000.01"), Decimal("3000"), Decimal("10"))


class TestSmallestUnit:
    """Test fiat to native coin conversion."""

    def test_exact_conversion(self):
        assert to_smallest_unit(Decimal("3000"), Decimal("30000")) == 10**17

    def test_rounds_down(self):
        assert to_smallest_unit(Decimal("1"), Decimal("3"), decimals=2) == 33

    def test_rejects_non_positive_values(self):
        with pytest.raises(InvalidPriceError):
            to_smallest_unit(Decimal("0"), Decimal("30000"))
        with pytest.raises(InvalidPriceError):
            to_smallest_unit(Decimal("10"), Decimal("0"))
