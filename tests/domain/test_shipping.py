"""Tests for server-side shipping charge rules."""

from decimal import Decimal

import pytest

from storefront.domain.shipping import ShippingRules, calculate_shipping, shipping_matches, to_money

pytestmark = pytest.mark.unit

RULES = ShippingRules()


@pytest.mark.parametrize(
    "state,subtotal,expected",
    [
        ("Tamil Nadu", Decimal("850"), Decimal("50.00")),
        ("tamil nadu", Decimal("850"), Decimal("50.00")),
        ("TN", Decimal("120"), Decimal("50.00")),
        ("Karnataka", Decimal("850"), Decimal("80.00")),
        ("", Decimal("850"), Decimal("80.00")),
        (None, Decimal("850"), Decimal("80.00")),
        ("Kerala", Decimal("1200"), Decimal("0.00")),
        ("Tamil Nadu", Decimal("999.01"), Decimal("0.00")),
    ],
)
def test_calculate_shipping(state, subtotal, expected):
    assert calculate_shipping(state, subtotal, RULES) == expected


def test_threshold_is_exclusive():
    assert calculate_shipping("Kerala", Decimal("999"), RULES) == Decimal("80.00")


def test_shipping_matches_within_epsilon():
    assert shipping_matches(50, Decimal("50.00"), RULES)
    assert shipping_matches("50.009", Decimal("50.00"), RULES)
    assert shipping_matches(49.99, Decimal("50.00"), RULES)
    assert not shipping_matches(0, Decimal("50.00"), RULES)
    assert not shipping_matches(80, Decimal("50.00"), RULES)


def test_to_money_rounds_half_up():
    assert to_money(0.125) == Decimal("0.13")
    assert to_money("425") == Decimal("425.00")
    assert to_money(Decimal("1.005")) == Decimal("1.01")


def test_custom_home_states():
    rules = ShippingRules(home_states=frozenset({"kerala"}), home_state_rate=Decimal("40"))
    assert calculate_shipping("Kerala", Decimal("100"), rules) == Decimal("40.00")
    assert calculate_shipping("Tamil Nadu", Decimal("100"), rules) == Decimal("80.00")
