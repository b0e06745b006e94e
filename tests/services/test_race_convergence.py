"""Client verification and webhook delivery racing to settle the same order."""

import asyncio
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from storefront.integrations.zoho import GatewayPayment
from storefront.services.verification_service import VerificationService
from storefront.services.webhook_service import WebhookOutcome, WebhookService, compute_signature

pytestmark = pytest.mark.integration

SECRET = "whsec_race"
OWNER = "priya@example.com"


def _gateway(status: str):
    payment = GatewayPayment(
        payment_id="pay_4001",
        session_id="ps_1001",
        status=status,
        amount=Decimal("900.00"),
        payment_method="upi",
    )
    gw = MagicMock()
    gw.get_session = AsyncMock(return_value=payment)
    gw.get_payment = AsyncMock(return_value=payment)
    return gw


def _webhook_body(status: str) -> bytes:
    return json.dumps(
        {
            "event_type": "payment.succeeded",
            "payment_id": "pay_4001",
            "payments_session_id": "ps_1001",
            "status": status,
        }
    ).encode()


@pytest.fixture
def notifier():
    return AsyncMock(return_value=True)


async def _race(session_factory, notifier, order_id, client_status, webhook_status):
    verifier = VerificationService(session_factory, _gateway(client_status), notifier=notifier)
    webhooks = WebhookService(session_factory, SECRET, notifier=notifier)
    body = _webhook_body(webhook_status)

    return await asyncio.gather(
        verifier.verify(OWNER, order_id, payments_session_id="ps_1001"),
        webhooks.handle(body, compute_signature(SECRET, body)),
    )


async def test_both_paths_converge_on_one_settlement(session_factory, notifier, make_order, fetch_order):
    order = await make_order()

    verified, delivered = await _race(session_factory, notifier, order.id, "succeeded", "succeeded")

    webhook_applied = delivered.outcome is WebhookOutcome.APPLIED
    assert verified.applied != webhook_applied
    if not webhook_applied:
        assert delivered.outcome is WebhookOutcome.ALREADY_SETTLED

    settled = await fetch_order(order.id)
    assert (settled.status, settled.payment_status) == ("confirmed", "success")
    assert settled.notes.count("[Payment") == 1
    assert notifier.await_count == 1
    assert verified.is_success and verified.payment_completed


async def test_conflicting_outcomes_report_the_stored_state(session_factory, notifier, make_order, fetch_order):
    order = await make_order()

    verified, delivered = await _race(session_factory, notifier, order.id, "declined", "succeeded")

    settled = await fetch_order(order.id)
    assert (settled.status, settled.payment_status) in {("confirmed", "success"), ("cancelled", "failed")}
    assert settled.notes.count("[Payment") == 1

    # Whichever path lost, the client response matches the persisted row
    assert verified.payment_status == settled.payment_status
    assert verified.is_success == (settled.payment_status == "success")
    assert verified.is_failed == (settled.payment_status == "failed")

    expected_emails = 1 if delivered.outcome is WebhookOutcome.APPLIED else 0
    assert notifier.await_count == expected_emails
