"""Order confirmation notifications: Redis-backed outbox and worker.

Reconciliation publishes an ``order.confirmed`` event only after the
settling transaction commits. Delivery happens later in
``NotificationWorker`` with its own retry policy, so mail failures never
affect reconciliation outcomes.
"""

import json
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
)

from storefront.core.config import get_settings
from storefront.db.models.order import Order
from storefront.db.redis import get_redis
from storefront.notifications.email import SendGridEmailSender, render_order_confirmation

logger = structlog.get_logger(__name__)

ORDER_CONFIRMED = "order.confirmed"


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, html: str) -> None: ...


def _parse_items(raw) -> list[dict]:
    """Normalise stored line items into {name, qty, price} rows."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("order_items_unparseable")
            raw = []
    if not isinstance(raw, list):
        return []

    rows = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            qty = int(item.get("quantity") or item.get("qty") or 1)
        except (TypeError, ValueError):
            qty = 1
        rows.append({
            "name": item.get("product_name") or item.get("name") or "Unknown Product",
            "qty": qty,
            "price": str(item.get("price") or 0),
        })
    return rows


def build_order_confirmed_event(order: Order, now: datetime | None = None) -> dict:
    now = now or datetime.now(UTC)
    return {
        "type": ORDER_CONFIRMED,
        "order_id": order.id,
        "to": order.customer_email,
        "customer_name": order.customer_name,
        "total": str(order.total_amount) if order.total_amount is not None else None,
        "items": _parse_items(order.items),
        "attempts": 0,
        "created_at": now.isoformat(),
    }


async def publish_order_confirmed(order: Order, redis: Redis | None = None) -> bool:
    """Queue a confirmation email for a freshly confirmed order.

    Fire-and-forget: never raises. Returns True if the event was queued.
    """
    if not order.customer_email:
        logger.warning("order_confirmed_without_email", order_id=order.id)
        return False

    try:
        redis = redis or get_redis()
        await redis.rpush(get_settings().notification_queue_key, json.dumps(build_order_confirmed_event(order)))
    except Exception as e:
        logger.warning("order_confirmed_publish_failed", order_id=order.id, error=str(e), error_type=type(e).__name__)
        return False

    logger.info("order_confirmed_published", order_id=order.id)
    return True


class NotificationWorker:
    """Drains the notification queue.

    Each event gets a short in-process retry burst; if that fails the event
    goes back on the queue with its attempt counter bumped, and after
    ``max_attempts`` bursts it moves to the dead-letter list.
    """

    def __init__(
        self,
        redis: Redis,
        sender: EmailSender | None = None,
        max_attempts: int | None = None,
        retry_wait=None,
    ):
        settings = get_settings()
        self.redis = redis
        self.sender = sender or SendGridEmailSender(settings)
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.queue_key = settings.notification_queue_key
        self.dead_letter_key = f"{settings.notification_queue_key}:dead"
        self.app_url = settings.app_url
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    async def _deliver(self, event: dict) -> None:
        subject, html = render_order_confirmation(event, self.app_url)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                await self.sender.send(event["to"], subject, html)

    async def process_next(self) -> bool:
        """Handle one queued event. Returns False when the queue is empty."""
        payload = await self.redis.lpop(self.queue_key)
        if payload is None:
            return False

        try:
            event = json.loads(payload)
        except ValueError:
            logger.error("notification_event_unparseable", payload=payload[:200])
            await self.redis.rpush(self.dead_letter_key, payload)
            return True

        if event.get("type") != ORDER_CONFIRMED:
            logger.warning("notification_event_unknown_type", event_type=event.get("type"))
            await self.redis.rpush(self.dead_letter_key, payload)
            return True

        try:
            await self._deliver(event)
        except Exception as e:
            event["attempts"] = int(event.get("attempts", 0)) + 1
            if event["attempts"] >= self.max_attempts:
                logger.error(
                    "order_confirmation_dead_lettered",
                    order_id=event.get("order_id"),
                    attempts=event["attempts"],
                    error=str(e),
                )
                await self.redis.rpush(self.dead_letter_key, json.dumps(event))
            else:
                logger.warning(
                    "order_confirmation_requeued",
                    order_id=event.get("order_id"),
                    attempts=event["attempts"],
                    error=str(e),
                )
                await self.redis.rpush(self.queue_key, json.dumps(event))
            return True

        logger.info("order_confirmation_sent", order_id=event.get("order_id"))
        return True

    async def drain(self, limit: int = 100) -> int:
        """Process up to ``limit`` events; returns how many were handled.

        Only events queued before the call are considered, so a requeued
        failure waits for the next drain instead of burning its attempts now.
        """
        limit = min(limit, await self.redis.llen(self.queue_key))
        handled = 0
        while handled < limit and await self.process_next():
            handled += 1
        return handled


async def process_pending_notifications(limit: int = 20) -> None:
    """Background-task entry point used by the webhook route."""
    try:
        worker = NotificationWorker(get_redis())
        await worker.drain(limit)
    except Exception as e:
        logger.warning("notification_drain_failed", error=str(e), error_type=type(e).__name__)
