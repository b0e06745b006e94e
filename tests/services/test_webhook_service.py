"""Tests for webhook reconciliation: signature, idempotency, lookup, settlement."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from storefront.core.exceptions import InvalidSignature, MalformedPayload, OrderNotFound, PaymentNotFinal
from storefront.db.models import WebhookLog
from storefront.services.webhook_service import (
    WebhookEvent,
    WebhookOutcome,
    WebhookService,
    compute_signature,
    verify_signature,
)

pytestmark = pytest.mark.integration

SECRET = "whsec_unit"


def _body(**overrides) -> bytes:
    payload = {
        "event_type": "payment.succeeded",
        "payment_id": "pay_2001",
        "payments_session_id": "ps_1001",
        "status": "succeeded",
        "amount": 900,
    }
    payload.update(overrides)
    return json.dumps(payload).encode()


def _signed(body: bytes) -> str:
    return compute_signature(SECRET, body)


@pytest.fixture
def notifier():
    return AsyncMock(return_value=True)


@pytest.fixture
def service(session_factory, notifier):
    return WebhookService(session_factory, SECRET, notifier=notifier)


async def _logs(session_factory) -> list[WebhookLog]:
    async with session_factory() as session:
        return list((await session.execute(select(WebhookLog).order_by(WebhookLog.id))).scalars().all())


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestSignature:
    def test_valid_signature_accepted(self):
        body = _body()
        verify_signature(body, _signed(body), SECRET)

    def test_signature_comparison_ignores_hex_case(self):
        body = _body()
        verify_signature(body, _signed(body).upper(), SECRET)

    def test_missing_signature_rejected(self):
        with pytest.raises(InvalidSignature):
            verify_signature(_body(), None, SECRET)

    def test_tampered_body_rejected(self):
        signature = _signed(_body())
        with pytest.raises(InvalidSignature):
            verify_signature(_body(amount=1), signature, SECRET)

    def test_unset_secret_fails_closed(self):
        body = _body()
        with pytest.raises(InvalidSignature):
            verify_signature(body, compute_signature("", body), "")

    async def test_rejected_signature_never_touches_storage(self):
        factory = MagicMock()
        svc = WebhookService(factory, SECRET)

        with pytest.raises(InvalidSignature):
            await svc.handle(_body(), "deadbeef")

        factory.assert_not_called()


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


class TestParse:
    def test_parse_reads_required_fields(self):
        event = WebhookEvent.parse(_body(reference_number="REF-9"))
        assert event.event_type == "payment.succeeded"
        assert event.payments_session_id == "ps_1001"
        assert event.reference_number == "REF-9"

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", json.dumps({"event_type": "payment.succeeded"}).encode()])
    def test_malformed_payload(self, body):
        with pytest.raises(MalformedPayload):
            WebhookEvent.parse(body)

    async def test_signed_but_malformed_body_raises(self, service):
        body = b"{"
        with pytest.raises(MalformedPayload):
            await service.handle(body, _signed(body))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def test_success_event_confirms_order(service, notifier, make_order, fetch_order, session_factory):
    order = await make_order()
    body = _body()

    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.APPLIED
    assert result.order_id == order.id
    assert result.order_status == "confirmed"

    settled = await fetch_order(order.id)
    assert (settled.status, settled.payment_status) == ("confirmed", "success")
    assert settled.payment_id == "pay_2001"
    assert "via webhook" in settled.notes

    notifier.assert_awaited_once()
    assert notifier.await_args.args[0].id == order.id

    logs = await _logs(session_factory)
    assert len(logs) == 1
    assert logs[0].success is True
    assert logs[0].outcome == "applied"
    assert logs[0].order_id == order.id


async def test_duplicate_delivery_is_idempotent(service, notifier, make_order, fetch_order, session_factory):
    order = await make_order()
    body = _body()

    first = await service.handle(body, _signed(body))
    second = await service.handle(body, _signed(body))

    assert first.outcome is WebhookOutcome.APPLIED
    assert second.outcome is WebhookOutcome.ALREADY_PROCESSED
    assert notifier.await_count == 1

    settled = await fetch_order(order.id)
    assert settled.notes.count("[Payment") == 1
    assert len(await _logs(session_factory)) == 1


async def test_concurrent_duplicate_rolls_back_transition(service, notifier, make_order, fetch_order, session_factory):
    """When another delivery claims the event first, the unique log index undoes this transition."""
    order = await make_order()
    async with session_factory() as session:
        session.add(
            WebhookLog(
                event_type="payment.succeeded",
                payment_id="pay_2001",
                status="succeeded",
                success=True,
                outcome="applied",
            )
        )
        await session.commit()

    body = _body()
    with patch.object(WebhookService, "_already_processed", AsyncMock(return_value=False)):
        result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.ALREADY_PROCESSED
    assert (await fetch_order(order.id)).status == "pending"
    notifier.assert_not_awaited()


async def test_non_payment_event_ignored(service, notifier, make_order, fetch_order, session_factory):
    order = await make_order()
    body = _body(event_type="refund.created", status="refunded")

    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.IGNORED
    assert (await fetch_order(order.id)).status == "pending"
    notifier.assert_not_awaited()
    logs = await _logs(session_factory)
    assert [(log.outcome, log.success) for log in logs] == [("ignored", True)]


async def test_unknown_session_raises_and_logs_failure(service, session_factory):
    body = _body(payments_session_id="ps_unknown")

    with pytest.raises(OrderNotFound):
        await service.handle(body, _signed(body))

    logs = await _logs(session_factory)
    assert len(logs) == 1
    assert logs[0].success is False
    assert logs[0].outcome == "order_not_found"


async def test_not_found_can_be_retried_later(service, make_order, session_factory):
    """A failed attempt does not block the gateway's retry once the order exists."""
    body = _body(payments_session_id="ps_late")
    with pytest.raises(OrderNotFound):
        await service.handle(body, _signed(body))

    await make_order(payment_session_id="ps_late")
    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.APPLIED
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(WebhookLog))
    assert count == 2


async def test_reference_number_fallback(service, make_order, fetch_order):
    order = await make_order(payment_session_id=None, reference_number="REF-77")
    body = _body(payments_session_id="ps_new", reference_number="REF-77")

    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.APPLIED
    settled = await fetch_order(order.id)
    assert settled.status == "confirmed"
    assert settled.payment_session_id == "ps_new"


async def test_order_settled_by_client_is_acknowledged(service, notifier, make_order, session_factory):
    order = await make_order(status="confirmed", payment_status="success", notes=" [Payment confirmed via client]")
    body = _body()

    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.ALREADY_SETTLED
    assert result.order_id == order.id
    notifier.assert_not_awaited()
    logs = await _logs(session_factory)
    assert logs[0].success is True
    assert logs[0].outcome == "already_settled"


async def test_explicit_failed_status_cancels_order(service, notifier, make_order, fetch_order):
    order = await make_order()
    body = _body(event_type="payment.captured", status="declined")

    result = await service.handle(body, _signed(body))

    assert result.outcome is WebhookOutcome.APPLIED
    assert result.order_status == "cancelled"
    assert (await fetch_order(order.id)).payment_status == "failed"
    notifier.assert_not_awaited()


@pytest.mark.parametrize("status", ["AUTH_OK", "pending", "processing"])
async def test_unrecognised_status_rejected_without_settling(service, notifier, make_order, fetch_order, session_factory, status):
    order = await make_order()
    body = _body(event_type="payment.authorized", status=status)

    with pytest.raises(PaymentNotFinal):
        await service.handle(body, _signed(body))

    pending = await fetch_order(order.id)
    assert (pending.status, pending.payment_status) == ("pending", "pending")
    assert pending.payment_id is None
    notifier.assert_not_awaited()

    logs = await _logs(session_factory)
    assert [(log.outcome, log.success, log.order_id) for log in logs] == [("not_final", False, order.id)]


async def test_not_final_delivery_does_not_block_final_one(service, make_order, fetch_order):
    order = await make_order()
    early = _body(status="pending")
    with pytest.raises(PaymentNotFinal):
        await service.handle(early, _signed(early))

    final = _body(status="succeeded")
    result = await service.handle(final, _signed(final))

    assert result.outcome is WebhookOutcome.APPLIED
    assert (await fetch_order(order.id)).status == "confirmed"


async def test_prefers_pending_order_over_settled_duplicate(service, make_order, fetch_order):
    settled = await make_order(status="cancelled", payment_status="failed")
    pending = await make_order()

    result = await service.handle(_body(), _signed(_body()))

    assert result.order_id == pending.id
    assert (await fetch_order(settled.id)).status == "cancelled"
