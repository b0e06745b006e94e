"""WebhookService: gateway callback reconciliation.

Processing order for each delivery:
1. HMAC signature over the raw body (before parsing or touching storage)
2. Idempotency check against the webhook log
3. Event type allow-list
4. Order lookup by payment session id, falling back to reference number
5. Conditional transition + log entry, committed together (only for a final status)
6. Confirmation notification, only for a transition this call applied

Every handled outcome except a duplicate delivery leaves a webhook_logs row.
"""

import hashlib
import hmac
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import (
    AlreadySettled,
    InvalidSignature,
    MalformedPayload,
    OrderNotFound,
    PaymentNotFinal,
)
from storefront.db.models.order import Order
from storefront.db.models.webhook_log import WebhookLog
from storefront.domain.payments import (
    RECONCILABLE_EVENTS,
    GatewayPaymentStatus,
    TransitionSource,
    is_reconcilable,
    is_settled,
    parse_gateway_status,
    target_for,
)
from storefront.notifications.queue import publish_order_confirmed
from storefront.services.order_transition import transition_order

logger = structlog.get_logger(__name__)

# Candidate orders examined per lookup key
_LOOKUP_CANDIDATES = 5


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_SETTLED = "already_settled"
    IGNORED = "ignored"
    ORDER_NOT_FOUND = "order_not_found"
    NOT_FINAL = "not_final"
    UPDATE_FAILED = "update_failed"


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    payment_id: str
    payments_session_id: str
    status: str
    amount: object = None
    reference_number: str | None = None

    @classmethod
    def parse(cls, body: bytes) -> "WebhookEvent":
        """Parse a raw webhook body. Raises MalformedPayload."""
        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedPayload("Invalid JSON payload") from exc

        if not isinstance(data, dict):
            raise MalformedPayload("Payload must be a JSON object")

        missing = [
            key
            for key in ("event_type", "payment_id", "payments_session_id", "status")
            if not isinstance(data.get(key), (str, int)) or data.get(key) == ""
        ]
        if missing:
            raise MalformedPayload(f"Missing fields: {', '.join(missing)}")

        reference = data.get("reference_number")
        return cls(
            event_type=str(data["event_type"]),
            payment_id=str(data["payment_id"]),
            payments_session_id=str(data["payments_session_id"]),
            status=str(data["status"]),
            amount=data.get("amount"),
            reference_number=str(reference) if reference else None,
        )


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    message: str
    order_id: int | None = None
    order_status: str | None = None


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Constant-time signature check. Raises InvalidSignature.

    An unset secret fails closed.
    """
    if not secret:
        logger.error("zoho_webhook_secret_missing")
        raise InvalidSignature("Webhook secret not configured")
    if not signature:
        raise InvalidSignature("Missing signature header")

    expected = compute_signature(secret, body).encode()
    if not hmac.compare_digest(expected, signature.strip().lower().encode()):
        raise InvalidSignature("Invalid signature")


class WebhookService:
    """Reconciles gateway webhook deliveries against local orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_secret: str,
        notifier: Callable[[Order], Awaitable[bool]] = publish_order_confirmed,
    ):
        self.session_factory = session_factory
        self.webhook_secret = webhook_secret
        self.notifier = notifier

    # ── Webhook log ──────────────────────────────────────────────────

    async def _already_processed(self, session: AsyncSession, event: WebhookEvent) -> bool:
        result = await session.execute(
            select(WebhookLog.id)
            .where(
                WebhookLog.payment_id == event.payment_id,
                WebhookLog.event_type == event.event_type,
                WebhookLog.success.is_(True),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _log_entry(
        event: WebhookEvent,
        outcome: WebhookOutcome,
        success: bool,
        order_id: int | None = None,
        error_message: str | None = None,
    ) -> WebhookLog:
        return WebhookLog(
            event_type=event.event_type,
            payment_id=event.payment_id,
            status=event.status,
            order_id=order_id,
            success=success,
            outcome=outcome.value,
            error_message=error_message,
        )

    async def _record_success(self, session: AsyncSession, entry: WebhookLog) -> bool:
        """Insert a successful log entry. False if a concurrent delivery already claimed the event."""
        session.add(entry)
        try:
            await session.commit()
            return True
        except IntegrityError:
            await session.rollback()
            logger.info("webhook_concurrent_duplicate", payment_id=entry.payment_id, event_type=entry.event_type)
            return False

    async def _record_failure(self, entry: WebhookLog) -> None:
        """Best-effort failure log in its own transaction."""
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("webhook_log_write_failed", payment_id=entry.payment_id, error=str(e))

    # ── Order lookup ─────────────────────────────────────────────────

    async def _candidates(self, session: AsyncSession, column, value: str) -> list[Order]:
        result = await session.execute(
            select(Order)
            .where(column == value)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(_LOOKUP_CANDIDATES)
        )
        return list(result.scalars().all())

    async def find_order(self, session: AsyncSession, event: WebhookEvent) -> Order:
        """Locate the order a webhook refers to.

        Prefers a reconcilable order. Raises AlreadySettled when the only
        matches are settled, OrderNotFound when nothing eligible matches.
        """
        lookups = [(Order.payment_session_id, event.payments_session_id)]
        if event.reference_number:
            lookups.append((Order.reference_number, event.reference_number))

        settled: Order | None = None
        for column, value in lookups:
            candidates = await self._candidates(session, column, value)
            for order in candidates:
                if is_reconcilable(order.status, order.payment_status):
                    return order
            if settled is None:
                settled = next((o for o in candidates if is_settled(o.status, o.payment_status)), None)

        if settled is not None:
            raise AlreadySettled(settled.id)
        raise OrderNotFound(f"No pending order for session {event.payments_session_id}")

    # ── Entry point ──────────────────────────────────────────────────

    async def handle(self, body: bytes, signature: str | None, now: datetime | None = None) -> WebhookResult:
        """Process one webhook delivery.

        Raises:
            InvalidSignature: Missing/invalid signature (nothing else is done)
            MalformedPayload: Body is not a usable event
            OrderNotFound: No eligible order yet; the gateway should retry
            PaymentNotFinal: Gateway status has no final outcome; nothing is changed
            SQLAlchemyError: Storage failure
        """
        verify_signature(body, signature, self.webhook_secret)
        event = WebhookEvent.parse(body)

        log = logger.bind(payment_id=event.payment_id, event_type=event.event_type)
        log.info("zoho_webhook_received", gateway_status=event.status)

        async with self.session_factory() as session:
            if await self._already_processed(session, event):
                log.info("webhook_already_processed")
                return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, "Already processed")

            if event.event_type not in RECONCILABLE_EVENTS:
                log.info("webhook_event_ignored")
                await self._record_success(session, self._log_entry(event, WebhookOutcome.IGNORED, True))
                return WebhookResult(WebhookOutcome.IGNORED, "Event ignored")

            try:
                order = await self.find_order(session, event)
            except AlreadySettled as settled:
                log.info("webhook_order_already_settled", order_id=settled.order_id)
                recorded = await self._record_success(
                    session,
                    self._log_entry(event, WebhookOutcome.ALREADY_SETTLED, True, settled.order_id, "Already settled"),
                )
                if not recorded:
                    return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, "Already processed")
                return WebhookResult(WebhookOutcome.ALREADY_SETTLED, "Order already settled", settled.order_id)
            except OrderNotFound:
                log.error("webhook_order_not_found", payments_session_id=event.payments_session_id)
                await session.rollback()
                await self._record_failure(self._log_entry(event, WebhookOutcome.ORDER_NOT_FOUND, False, None, "Order not found"))
                raise

            order_id = order.id
            outcome = parse_gateway_status(event.status)
            if outcome is GatewayPaymentStatus.INDETERMINATE:
                log.warning("webhook_status_not_final", order_id=order_id, gateway_status=event.status)
                await session.rollback()
                await self._record_failure(
                    self._log_entry(event, WebhookOutcome.NOT_FINAL, False, order_id, "Payment outcome not final")
                )
                raise PaymentNotFinal(f"Gateway status {event.status!r} is not final")

            try:
                applied = await transition_order(
                    session,
                    order_id,
                    target_for(outcome),
                    TransitionSource.WEBHOOK,
                    payment_id=event.payment_id,
                    payment_session_id=event.payments_session_id,
                    now=now,
                )
                entry = self._log_entry(
                    event,
                    WebhookOutcome.APPLIED if applied else WebhookOutcome.ALREADY_SETTLED,
                    True,
                    order_id,
                    None if applied else "Settled by another path",
                )
                recorded = await self._record_success(session, entry)
            except SQLAlchemyError as e:
                await session.rollback()
                log.error("webhook_order_update_failed", order_id=order_id, error=str(e))
                await self._record_failure(
                    self._log_entry(event, WebhookOutcome.UPDATE_FAILED, False, order_id, "Order update failed")
                )
                raise

            if not recorded:
                # Concurrent delivery of the same event won; our transition rolled back with the log insert
                return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, "Already processed", order_id)

            settled_order = await session.get(Order, order_id, populate_existing=True)

        if not applied:
            log.info("webhook_lost_race", order_id=order_id)
            return WebhookResult(WebhookOutcome.ALREADY_SETTLED, "Order already settled", order_id, settled_order.status)

        if outcome is GatewayPaymentStatus.SUCCESS:
            await self.notifier(settled_order)

        log.info("webhook_reconciled", order_id=order_id, order_status=settled_order.status)
        return WebhookResult(WebhookOutcome.APPLIED, "Order reconciled", order_id, settled_order.status)
