"""VerificationService: client-path payment verification.

Invoked when the hosted widget reports an outcome to the shopper's browser.
The browser's claim is never trusted: the payment is re-read from the
gateway and the order is settled through the shared transition primitive.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import PaymentVerificationFailed, Unauthorized
from storefront.db.models.order import Order
from storefront.domain.payments import (
    GatewayPaymentStatus,
    PaymentStatus,
    TransitionSource,
    is_settled,
    parse_gateway_status,
    target_for,
)
from storefront.integrations.zoho import GatewayPayment, ZohoPaymentsClient
from storefront.notifications.queue import publish_order_confirmed
from storefront.services.order_transition import transition_order

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    order_id: int
    outcome: GatewayPaymentStatus
    applied: bool
    status: str
    payment_status: str
    payment: GatewayPayment | None = None

    @property
    def is_success(self) -> bool:
        return self.outcome is GatewayPaymentStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.outcome is GatewayPaymentStatus.FAILED

    @property
    def payment_completed(self) -> bool:
        """Derived from the persisted order, not from anything the client holds."""
        return self.payment_status == PaymentStatus.SUCCESS.value


def _same_owner(order_email: str | None, caller_email: str) -> bool:
    return bool(order_email) and order_email.strip().lower() == caller_email.strip().lower()


def _outcome_from_order(order: Order) -> GatewayPaymentStatus:
    if order.payment_status == PaymentStatus.SUCCESS.value:
        return GatewayPaymentStatus.SUCCESS
    if order.payment_status == PaymentStatus.FAILED.value:
        return GatewayPaymentStatus.FAILED
    return GatewayPaymentStatus.INDETERMINATE


class VerificationService:
    """Verifies a shopper-reported payment against the gateway and settles the order."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: ZohoPaymentsClient,
        notifier: Callable[[Order], Awaitable[bool]] = publish_order_confirmed,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier

    async def _load_owned_order(self, order_id: int, caller_email: str) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)

        # Missing and foreign orders are indistinguishable to the caller
        if order is None or not _same_owner(order.customer_email, caller_email):
            logger.warning("payment_verify_ownership_rejected", order_id=order_id, order_exists=order is not None)
            raise Unauthorized("Order does not belong to caller")
        return order

    async def _fetch_payment(self, payment_id: str | None, payments_session_id: str | None) -> GatewayPayment:
        if payments_session_id:
            return await self.gateway.get_session(payments_session_id)
        return await self.gateway.get_payment(payment_id)

    async def verify(
        self,
        caller_email: str,
        order_id: int,
        payment_id: str | None = None,
        payments_session_id: str | None = None,
        now: datetime | None = None,
    ) -> VerificationResult:
        """Verify a payment and apply the order state transition.

        Args:
            caller_email: Email of the authenticated caller (ownership check)
            order_id: Order the payment is for
            payment_id: Gateway payment id, if the widget reported one
            payments_session_id: Gateway session id, if known
            now: Current time (for deterministic testing)

        Raises:
            Unauthorized: Order missing or owned by someone else
            PaymentVerificationFailed: No final outcome, or payment belongs to another session
            GatewayAuthRequired, GatewayError: Propagated from the gateway client
        """
        if not payment_id and not payments_session_id:
            raise PaymentVerificationFailed("payment_id or payments_session_id is required")

        order = await self._load_owned_order(order_id, caller_email)

        if is_settled(order.status, order.payment_status):
            logger.info("payment_verify_already_settled", order_id=order_id, status=order.status)
            return VerificationResult(
                order_id=order_id,
                outcome=_outcome_from_order(order),
                applied=False,
                status=order.status,
                payment_status=order.payment_status,
            )

        if payments_session_id and order.payment_session_id and payments_session_id != order.payment_session_id:
            logger.warning("payment_verify_session_mismatch", order_id=order_id)
            raise PaymentVerificationFailed("Payment session does not belong to order")

        payment = await self._fetch_payment(payment_id, payments_session_id)

        if payment.session_id and order.payment_session_id and payment.session_id != order.payment_session_id:
            logger.warning("payment_verify_gateway_session_mismatch", order_id=order_id, payment_id=payment.payment_id)
            raise PaymentVerificationFailed("Payment session does not belong to order")

        outcome = parse_gateway_status(payment.status)
        if outcome is GatewayPaymentStatus.INDETERMINATE:
            logger.info(
                "payment_verify_indeterminate",
                order_id=order_id,
                payment_id=payment.payment_id,
                gateway_status=payment.status,
            )
            raise PaymentVerificationFailed("Payment outcome not final")

        async with self.session_factory() as session:
            applied = await transition_order(
                session,
                order_id,
                target_for(outcome),
                TransitionSource.CLIENT,
                payment_id=payment.payment_id or payment_id,
                payment_session_id=payment.session_id or payments_session_id,
                customer_email=caller_email,
                now=now,
            )
            await session.commit()
            settled = await session.get(Order, order_id)

        if applied and outcome is GatewayPaymentStatus.SUCCESS:
            await self.notifier(settled)

        reported = outcome if applied else _outcome_from_order(settled)
        logger.info(
            "payment_verified",
            order_id=order_id,
            outcome=outcome.value,
            applied=applied,
            status=settled.status,
        )
        return VerificationResult(
            order_id=order_id,
            outcome=reported,
            applied=applied,
            status=settled.status,
            payment_status=settled.payment_status,
            payment=payment,
        )
