from __future__ import annotations

import pytest

from boxoffice.config import Config
from boxoffice.models import OrderStatus, PaymentGateway, PaymentStatus, TicketStatus
from boxoffice.services.order_service import OrderService
from boxoffice.services.webhook_service import (
    StripeEventHandler,
    WebhookSecretMissingError,
    resolve_webhook_secret,
)
from conftest import create_order


class _StubMailer:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html, tags=None, sender=None):
        self.sent.append(to)
        return True, "Sent", "msg_1"


def _handle(db_session, event, mailer=None):
    orders = OrderService(db_session, mailer=mailer or _StubMailer())
    StripeEventHandler(db_session, event, order_service=orders).handle()


def _intent_event(event_type, intent_id, **intent_fields):
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": intent_id, "metadata": {}, **intent_fields}},
    }


def _refund_event(intent_id, amount_cents, refunded_cents, refunded=False):
    return {
        "id": "evt_refund",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "payment_intent": intent_id,
                "amount": amount_cents,
                "amount_refunded": refunded_cents,
                "refunded": refunded,
                "metadata": {},
            }
        },
    }


def test_payment_succeeded_confirms_order_and_issues_tickets(db_session, sample_order):
    mailer = _StubMailer()
    event = _intent_event(
        "payment_intent.succeeded",
        sample_order.payment_intent_id,
        latest_charge={
            "receipt_url": "https://pay.stripe.com/receipts/1",
            "payment_method_details": {"type": "card", "card": {"brand": "visa", "last4": "4242"}},
        },
    )

    _handle(db_session, event, mailer)

    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.CONFIRMED
    assert sample_order.payment_status == PaymentStatus.PAID
    assert sample_order.card_last4 == "4242"
    assert len(sample_order.tickets) == 2
    assert mailer.sent == ["buyer@example.com"]


def test_duplicate_success_is_ignored(db_session, sample_order):
    mailer = _StubMailer()
    event = _intent_event("payment_intent.succeeded", sample_order.payment_intent_id)

    _handle(db_session, event, mailer)
    _handle(db_session, event, mailer)

    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.CONFIRMED
    assert len(sample_order.tickets) == 2
    assert len(mailer.sent) == 1


def test_order_is_found_through_metadata(db_session, sample_order):
    event = {
        "id": "evt_meta",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_unknown", "metadata": {"orderId": sample_order.order_number}}},
    }
    _handle(db_session, event)
    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.CONFIRMED


def test_payment_failed_records_reason(db_session, sample_order):
    event = _intent_event(
        "payment_intent.payment_failed",
        sample_order.payment_intent_id,
        last_payment_error={"message": "Your card has insufficient funds."},
    )

    _handle(db_session, event)

    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.FAILED
    assert sample_order.payment_status == PaymentStatus.FAILED
    assert sample_order.failure_reason == "Your card has insufficient funds."


def test_partial_refund_webhook(db_session, sample_event):
    order = create_order(db_session, sample_event, quantity=2)

    _handle(db_session, _refund_event(order.payment_intent_id, 11000, 5000))

    db_session.refresh(order)
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert order.payment_status == PaymentStatus.PARTIALLY_REFUNDED
    assert float(order.refunded_amount) == 50.0


def test_full_refund_webhook_cancels_tickets(db_session, sample_order):
    _handle(db_session, _intent_event("payment_intent.succeeded", sample_order.payment_intent_id))

    _handle(db_session, _refund_event(sample_order.payment_intent_id, 11000, 11000, refunded=True))

    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.REFUNDED
    assert sample_order.payment_status == PaymentStatus.REFUNDED
    assert float(sample_order.refunded_amount) == 110.0
    assert {ticket.status for ticket in sample_order.tickets} == {TicketStatus.CANCELLED}


def test_refund_webhook_for_pending_order_is_ignored(db_session, sample_order):
    _handle(db_session, _refund_event(sample_order.payment_intent_id, 11000, 11000, refunded=True))
    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.PENDING


def test_unknown_order_and_event_types_are_logged_only(db_session, sample_order):
    _handle(db_session, _intent_event("payment_intent.succeeded", "pi_missing"))
    _handle(db_session, {"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
    db_session.refresh(sample_order)
    assert sample_order.status == OrderStatus.PENDING


def test_resolve_webhook_secret_prefers_promoter_secret(db_session, sample_promoter):
    assert resolve_webhook_secret(db_session, "rockhouse") == Config.STRIPE_WEBHOOK_SECRET

    gateway = db_session.query(PaymentGateway).filter_by(promoterID=sample_promoter.promoterID).one()
    gateway.credentials = {**gateway.credentials, "webhookSecret": "whsec_promoter"}
    db_session.commit()

    assert resolve_webhook_secret(db_session, "rockhouse") == "whsec_promoter"
    assert resolve_webhook_secret(db_session, None) == "whsec_test_secret"


def test_resolve_webhook_secret_without_any_secret(db_session, monkeypatch):
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(WebhookSecretMissingError):
        resolve_webhook_secret(db_session, "nobody")
