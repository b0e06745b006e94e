"""Order State Transition: the single write path for settling an order.

Both reconciliation paths (client verifier, webhook reconciler) and the
stale-payment recovery job settle orders through ``transition_order``.
The write is one conditional UPDATE: it only matches while the order is
still pre-settlement, so concurrent callers converge on exactly one
winner and every loser observes a no-op.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.db.models.order import Order
from storefront.domain.payments import (
    PRE_SETTLEMENT_STATUSES,
    OrderStatus,
    PaymentStatus,
    TransitionSource,
    VALID_COMBINATIONS,
)

logger = structlog.get_logger(__name__)


def audit_note(target_status: OrderStatus, source: TransitionSource, now: datetime) -> str:
    """Build the note appended to ``orders.notes`` for a settled transition."""
    verb = "confirmed" if target_status is OrderStatus.CONFIRMED else "failed"
    return f" [Payment {verb} via {source.value} at {now.isoformat()}]"


async def transition_order(
    session: AsyncSession,
    order_id: int,
    target: tuple[OrderStatus, PaymentStatus],
    source: TransitionSource,
    *,
    payment_id: str | None = None,
    payment_session_id: str | None = None,
    customer_email: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Atomically move an order from pre-settlement to ``target``.

    Executes within the caller's transaction and does not commit; callers
    commit so that side records (e.g. the webhook log) land atomically.

    Args:
        session: Active async session
        order_id: Order to settle
        target: Terminal (status, payment_status) pair
        source: Path performing the transition, recorded in the audit note
        payment_id: Gateway payment id to link (left unchanged when None)
        payment_session_id: Gateway session id to link (left unchanged when None)
        customer_email: When given, the update also requires a matching owner
        now: Current time (for deterministic testing)

    Returns:
        True if this call settled the order, False if it was already settled,
        not eligible, or owned by someone else. A False return is not an error.
    """
    if target not in VALID_COMBINATIONS or target[1] is PaymentStatus.PENDING:
        raise ValueError(f"Not a terminal state: {target}")

    now = now or datetime.now(UTC)
    target_status, target_payment_status = target

    values = {
        "status": target_status.value,
        "payment_status": target_payment_status.value,
        "updated_at": now,
        "notes": func.coalesce(Order.notes, "") + audit_note(target_status, source, now),
    }
    if payment_id is not None:
        values["payment_id"] = payment_id
    if payment_session_id is not None:
        values["payment_session_id"] = payment_session_id

    conditions = [
        Order.id == order_id,
        Order.status.in_([s.value for s in PRE_SETTLEMENT_STATUSES]),
        Order.payment_status == PaymentStatus.PENDING.value,
    ]
    if customer_email is not None:
        conditions.append(func.lower(Order.customer_email) == customer_email.strip().lower())

    result = await session.execute(
        update(Order).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )

    applied = result.rowcount == 1
    if applied:
        logger.info(
            "order_transitioned",
            order_id=order_id,
            status=target_status.value,
            payment_status=target_payment_status.value,
            source=source.value,
        )
    else:
        logger.info("order_transition_noop", order_id=order_id, source=source.value)
    return applied
