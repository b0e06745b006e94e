"""Order/payment status vocabulary and gateway status parsing.

Pure domain logic, no I/O.
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    # Legacy pre-settlement value written by older checkout flows
    PAYMENT_INITIATED = "payment_initiated"
    PROCESSING = "processing"  # cash-on-delivery
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class GatewayPaymentStatus(str, Enum):
    """Closed interpretation of the gateway's free-text status field."""

    SUCCESS = "success"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


class TransitionSource(str, Enum):
    """Which reconciliation path performed a transition (recorded in order notes)."""

    CLIENT = "client"
    WEBHOOK = "webhook"
    RECOVERY = "recovery"


SUCCESS_TOKENS = frozenset({"succeeded", "success", "approved", "captured", "completed", "authorized", "paid"})
FAILED_TOKENS = frozenset({"failed", "declined", "cancelled", "canceled", "rejected", "expired"})

# Order statuses the reconciliation core may settle
PRE_SETTLEMENT_STATUSES: tuple[OrderStatus, ...] = (OrderStatus.PENDING, OrderStatus.PAYMENT_INITIATED)

SETTLED_SUCCESS = (OrderStatus.CONFIRMED, PaymentStatus.SUCCESS)
SETTLED_FAILED = (OrderStatus.CANCELLED, PaymentStatus.FAILED)

VALID_COMBINATIONS: frozenset[tuple[OrderStatus, PaymentStatus]] = frozenset({
    (OrderStatus.PENDING, PaymentStatus.PENDING),
    (OrderStatus.PAYMENT_INITIATED, PaymentStatus.PENDING),
    (OrderStatus.PROCESSING, PaymentStatus.PENDING),
    SETTLED_SUCCESS,
    SETTLED_FAILED,
})

# Webhook events that trigger reconciliation; everything else is acknowledged and ignored
RECONCILABLE_EVENTS = frozenset({"payment.succeeded", "payment.authorized", "payment.captured"})


def parse_gateway_status(raw: str | None) -> GatewayPaymentStatus:
    """Map a gateway status string onto the closed enum.

    Matching is case-insensitive on the whole token. Unknown, empty, or
    missing values are INDETERMINATE and must never settle an order.
    """
    token = (raw or "").strip().lower()
    if token in SUCCESS_TOKENS:
        return GatewayPaymentStatus.SUCCESS
    if token in FAILED_TOKENS:
        return GatewayPaymentStatus.FAILED
    return GatewayPaymentStatus.INDETERMINATE


def target_for(outcome: GatewayPaymentStatus) -> tuple[OrderStatus, PaymentStatus]:
    """Return the terminal (status, payment_status) pair for a final gateway outcome."""
    if outcome is GatewayPaymentStatus.SUCCESS:
        return SETTLED_SUCCESS
    if outcome is GatewayPaymentStatus.FAILED:
        return SETTLED_FAILED
    raise ValueError("Indeterminate outcomes have no terminal state")


def is_valid_combination(status: str, payment_status: str) -> bool:
    try:
        return (OrderStatus(status), PaymentStatus(payment_status)) in VALID_COMBINATIONS
    except ValueError:
        return False


def is_settled(status: str, payment_status: str) -> bool:
    """True once an order is no longer eligible for reconciliation."""
    return payment_status in (PaymentStatus.SUCCESS.value, PaymentStatus.FAILED.value) or status in (
        OrderStatus.CONFIRMED.value,
        OrderStatus.CANCELLED.value,
    )


def is_reconcilable(status: str, payment_status: str) -> bool:
    """True when the order is in a pre-settlement state the core may transition."""
    return (
        status in {s.value for s in PRE_SETTLEMENT_STATUSES}
        and payment_status == PaymentStatus.PENDING.value
    )
