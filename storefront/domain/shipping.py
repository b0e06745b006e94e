"""Server-side shipping charge rules.

Free above the threshold, otherwise a flat regional rate keyed by the
destination state. Pure functions; callers pass in the configured table.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class ShippingRules:
    free_threshold: Decimal = Decimal("999")
    home_state_rate: Decimal = Decimal("50")
    default_rate: Decimal = Decimal("80")
    home_states: frozenset[str] = field(default_factory=lambda: frozenset({"tamil nadu", "tn"}))
    epsilon: Decimal = Decimal("0.01")

    @classmethod
    def from_settings(cls, settings) -> "ShippingRules":
        return cls(
            free_threshold=Decimal(settings.free_shipping_threshold),
            home_state_rate=Decimal(settings.home_state_shipping),
            default_rate=Decimal(settings.default_shipping),
            home_states=frozenset(s.strip().lower() for s in settings.home_states),
            epsilon=Decimal(settings.shipping_epsilon),
        )


def to_money(value) -> Decimal:
    """Coerce a float/int/str/Decimal amount to a 2dp Decimal."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_shipping(state: str | None, subtotal: Decimal, rules: ShippingRules) -> Decimal:
    """Return the shipping charge for a destination state and cart subtotal.

    The threshold is exclusive: a subtotal of exactly the threshold still pays shipping.
    """
    if subtotal > rules.free_threshold:
        return to_money(0)
    if (state or "").strip().lower() in rules.home_states:
        return to_money(rules.home_state_rate)
    return to_money(rules.default_rate)


def shipping_matches(declared, expected: Decimal, rules: ShippingRules) -> bool:
    return abs(Decimal(str(declared)) - expected) <= rules.epsilon
