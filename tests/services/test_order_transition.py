"""Tests for the conditional order state transition."""

import asyncio
from datetime import UTC, datetime

import pytest

from storefront.domain.payments import (
    SETTLED_FAILED,
    SETTLED_SUCCESS,
    OrderStatus,
    PaymentStatus,
    TransitionSource,
)
from storefront.services.order_transition import audit_note, transition_order

pytestmark = pytest.mark.integration

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)


async def _transition(session_factory, order_id, target=SETTLED_SUCCESS, source=TransitionSource.WEBHOOK, **kwargs):
    async with session_factory() as session:
        applied = await transition_order(session, order_id, target, source, now=NOW, **kwargs)
        await session.commit()
        return applied


def test_audit_note_names_source_and_time():
    note = audit_note(OrderStatus.CONFIRMED, TransitionSource.CLIENT, NOW)
    assert note == f" [Payment confirmed via client at {NOW.isoformat()}]"
    assert "failed via webhook" in audit_note(OrderStatus.CANCELLED, TransitionSource.WEBHOOK, NOW)


async def test_transition_settles_pending_order(session_factory, make_order, fetch_order):
    order = await make_order(notes="Gift wrap")

    applied = await _transition(session_factory, order.id, payment_id="pay_1", payment_session_id="ps_1001")

    assert applied is True
    settled = await fetch_order(order.id)
    assert settled.status == "confirmed"
    assert settled.payment_status == "success"
    assert settled.payment_id == "pay_1"
    assert settled.notes.startswith("Gift wrap [Payment confirmed via webhook")


async def test_transition_from_null_notes(session_factory, make_order, fetch_order):
    order = await make_order(notes=None)

    await _transition(session_factory, order.id, target=SETTLED_FAILED)

    settled = await fetch_order(order.id)
    assert (settled.status, settled.payment_status) == ("cancelled", "failed")
    assert settled.notes == audit_note(OrderStatus.CANCELLED, TransitionSource.WEBHOOK, NOW)


async def test_transition_from_legacy_payment_initiated(session_factory, make_order, fetch_order):
    order = await make_order(status="payment_initiated")

    assert await _transition(session_factory, order.id) is True
    assert (await fetch_order(order.id)).status == "confirmed"


async def test_second_transition_is_noop(session_factory, make_order, fetch_order):
    """A settled order never changes again and carries exactly one audit note."""
    order = await make_order()

    assert await _transition(session_factory, order.id, source=TransitionSource.CLIENT) is True
    assert await _transition(session_factory, order.id, source=TransitionSource.WEBHOOK) is False
    assert await _transition(session_factory, order.id, target=SETTLED_FAILED) is False

    settled = await fetch_order(order.id)
    assert (settled.status, settled.payment_status) == ("confirmed", "success")
    assert settled.notes.count("[Payment") == 1
    assert "via client" in settled.notes


async def test_concurrent_transitions_converge(session_factory, make_order, fetch_order):
    order = await make_order()

    results = await asyncio.gather(
        _transition(session_factory, order.id, source=TransitionSource.CLIENT),
        _transition(session_factory, order.id, source=TransitionSource.WEBHOOK),
    )

    assert sorted(results) == [False, True]
    settled = await fetch_order(order.id)
    assert settled.status == "confirmed"
    assert settled.notes.count("[Payment") == 1


async def test_cod_order_is_not_eligible(session_factory, make_order, fetch_order):
    order = await make_order(status="processing", payment_method="cod", payment_session_id=None)

    assert await _transition(session_factory, order.id) is False
    assert (await fetch_order(order.id)).status == "processing"


async def test_owner_filter_is_case_insensitive(session_factory, make_order):
    order = await make_order(customer_email="Priya@Example.com")

    assert await _transition(session_factory, order.id, customer_email="someone@else.com") is False
    assert await _transition(session_factory, order.id, customer_email=" priya@example.COM ") is True


async def test_payment_linkage_left_alone_when_not_given(session_factory, make_order, fetch_order):
    order = await make_order(payment_session_id="ps_keep")

    await _transition(session_factory, order.id)

    settled = await fetch_order(order.id)
    assert settled.payment_session_id == "ps_keep"
    assert settled.payment_id is None


async def test_non_terminal_target_rejected(session_factory, make_order):
    order = await make_order()
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await transition_order(
                session, order.id, (OrderStatus.PENDING, PaymentStatus.PENDING), TransitionSource.CLIENT
            )
