"""RecoveryService: settles orders whose payment outcome never arrived.

Covers shoppers who closed the widget before the client verifier ran and
webhooks the gateway gave up redelivering. Orders are re-read from the
gateway and settled through the same conditional transition, so running
this alongside live traffic is safe.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import GatewayError
from storefront.db.models.order import Order
from storefront.domain.payments import (
    PRE_SETTLEMENT_STATUSES,
    GatewayPaymentStatus,
    PaymentStatus,
    TransitionSource,
    parse_gateway_status,
    target_for,
)
from storefront.integrations.zoho import ZohoPaymentsClient
from storefront.notifications.queue import publish_order_confirmed
from storefront.services.order_transition import transition_order

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryReport:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    unresolved: int = 0
    errors: int = 0


class RecoveryService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ZohoPaymentsClient,
        notifier: Callable[[Order], Awaitable[bool]] = publish_order_confirmed,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier

    async def stale_orders(self, cutoff: datetime, limit: int) -> list[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(
                    Order.status.in_([s.value for s in PRE_SETTLEMENT_STATUSES]),
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.payment_session_id.is_not(None),
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def recover_stale_orders(
        self,
        older_than: timedelta = timedelta(minutes=30),
        limit: int = 50,
        now: datetime | None = None,
    ) -> RecoveryReport:
        """Re-verify pending online-payment orders older than ``older_than``.

        GatewayAuthRequired aborts the run; per-order GatewayError is counted and skipped.
        """
        now = now or datetime.now(UTC)
        report = RecoveryReport()

        for order in await self.stale_orders(now - older_than, limit):
            report.checked += 1
            try:
                payment = await self.gateway.get_session(order.payment_session_id)
            except GatewayError as e:
                report.errors += 1
                logger.warning("recovery_gateway_error", order_id=order.id, retryable=e.retryable)
                continue

            outcome = parse_gateway_status(payment.status)
            if outcome is GatewayPaymentStatus.INDETERMINATE:
                report.unresolved += 1
                continue

            async with self.session_factory() as session:
                applied = await transition_order(
                    session,
                    order.id,
                    target_for(outcome),
                    TransitionSource.RECOVERY,
                    payment_id=payment.payment_id,
                    now=now,
                )
                await session.commit()
                settled = await session.get(Order, order.id)

            if not applied:
                continue
            if outcome is GatewayPaymentStatus.SUCCESS:
                report.confirmed += 1
                await self.notifier(settled)
            else:
                report.failed += 1

        logger.info(
            "payment_recovery_finished",
            checked=report.checked,
            confirmed=report.confirmed,
            failed=report.failed,
            unresolved=report.unresolved,
            errors=report.errors,
        )
        return report
