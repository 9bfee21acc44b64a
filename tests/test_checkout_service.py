from __future__ import annotations

from types import SimpleNamespace

import pytest

from boxoffice.models import Customer, HoldStatus, Order, OrderStatus, Promotion, PromotionType
from boxoffice.services.admin_service import AdminService
from boxoffice.services.checkout_service import CheckoutService, generate_order_number
from boxoffice.services.order_service import OrderService
from boxoffice.services.payment_service import GatewayNotConfiguredError
from conftest import create_event, create_order, create_promoter


class _StubPaymentService:
    def __init__(self, fail_intent: bool = False, fail_customer: bool = False, gateway_missing: bool = False):
        self.fail_intent = fail_intent
        self.fail_customer = fail_customer
        self.gateway_missing = gateway_missing
        self.intents = []

    def get_secret_key(self, promoter):
        if self.gateway_missing:
            raise GatewayNotConfiguredError("Payment gateway not configured for this promoter")
        return "sk_test_123"

    def find_or_create_customer(self, api_key, email, name=None, phone=None):
        if self.fail_customer:
            return False, "Stripe unavailable", None
        return True, "Customer created", "cus_123"

    def create_payment_intent(self, api_key, amount_cents, metadata, customer_id=None, receipt_email=None, currency=None):
        self.intents.append({"amount": amount_cents, "metadata": metadata, "customer": customer_id})
        if self.fail_intent:
            return False, "Your card was declined.", None
        return True, "Payment intent created", SimpleNamespace(id=f"pi_{len(self.intents)}", client_secret="secret_abc")


class _StubMailer:
    def send(self, to, subject, html, tags=None, sender=None):
        return True, "Sent", "msg_1"


CUSTOMER = {"email": "Fan@Example.com", "name": "Fan Person", "phone": "555-0100"}


def _checkout(db_session, **stub_kwargs):
    stub = _StubPaymentService(**stub_kwargs)
    return CheckoutService(db_session, payment_service=stub), stub


def test_order_number_format():
    number = generate_order_number(now_ms=1700000000000)
    prefix, stamp, suffix = number.split("-")
    assert prefix == "ORD"
    assert stamp == "1700000000000"
    assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix


def test_create_payment_intent_prices_cart_and_stores_pending_order(db_session, sample_event):
    service, stub = _checkout(db_session)

    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": sample_event.eventID, "quantity": 2}], CUSTOMER
    )

    assert ok
    assert result["subtotal"] == 100.00
    assert result["serviceFee"] == 10.00
    assert result["amount"] == 110.00
    assert result["clientSecret"] == "secret_abc"
    assert stub.intents[0]["amount"] == 11000
    assert stub.intents[0]["metadata"]["eventIds"] == str(sample_event.eventID)
    assert stub.intents[0]["customer"] == "cus_123"

    order = db_session.query(Order).filter_by(order_number=result["orderId"]).one()
    assert order.status == OrderStatus.PENDING
    assert order.payment_intent_id == "pi_1"
    assert order.customer_email == "fan@example.com"
    assert order.ticket_count == 2
    customer = db_session.query(Customer).filter_by(email="fan@example.com").one()
    assert customer.first_name == "Fan"
    assert customer.last_name == "Person"


def test_promo_code_discount_applies_before_fee(db_session, sample_event, sample_promoter):
    db_session.add(
        Promotion(promoterID=sample_promoter.promoterID, code="HALF", promo_type=PromotionType.PERCENTAGE,
                  value=50, used_count=0, active=True)
    )
    db_session.commit()
    service, _stub = _checkout(db_session)

    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": sample_event.eventID, "quantity": 2}], CUSTOMER, promo_code="half"
    )

    assert ok
    assert result["discount"] == 50.00
    assert result["subtotal"] == 50.00
    assert result["serviceFee"] == 5.00
    assert result["amount"] == 55.00
    order = db_session.query(Order).filter_by(order_number=result["orderId"]).one()
    assert order.promo_code == "HALF"


@pytest.mark.parametrize(
    "slug, items, customer, code, status",
    [
        ("rockhouse", [], CUSTOMER, "invalid_request", 400),
        ("rockhouse", [{"eventId": 1, "quantity": 1}], {}, "invalid_request", 400),
        ("nobody", [{"eventId": 1, "quantity": 1}], CUSTOMER, "promoter_not_found", 404),
        ("rockhouse", [{"eventId": 1, "quantity": 0}], CUSTOMER, "invalid_request", 400),
        ("rockhouse", [{"eventId": 1, "quantity": 101}], CUSTOMER, "capacity_exceeded", 409),
    ],
)
def test_create_payment_intent_rejections(db_session, sample_event, slug, items, customer, code, status):
    items = [{**item, "eventId": sample_event.eventID} for item in items]
    service, stub = _checkout(db_session)

    ok, _message, result = service.create_payment_intent(slug, items, customer)

    assert not ok
    assert result == {"code": code, "status": status}
    assert stub.intents == []


def test_event_from_another_promoter_is_rejected(db_session, sample_promoter):
    other = create_promoter(db_session, slug="elsewhere")
    foreign_event = create_event(db_session, other)
    service, _stub = _checkout(db_session)

    ok, message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": foreign_event.eventID, "quantity": 1}], CUSTOMER
    )

    assert not ok
    assert result["code"] == "invalid_request"
    assert "does not belong" in message


def test_missing_gateway_is_reported(db_session, sample_event):
    service, _stub = _checkout(db_session, gateway_missing=True)
    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": sample_event.eventID, "quantity": 1}], CUSTOMER
    )
    assert not ok
    assert result["code"] == "gateway_not_configured"


def test_total_below_minimum_charge_is_rejected(db_session, sample_promoter):
    cheap = create_event(db_session, sample_promoter, price=0.20)
    service, _stub = _checkout(db_session)
    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": cheap.eventID, "quantity": 1}], CUSTOMER
    )
    assert not ok
    assert result["code"] == "amount_too_small"


def test_stripe_failure_creates_no_order(db_session, sample_event):
    service, _stub = _checkout(db_session, fail_intent=True)
    ok, message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": sample_event.eventID, "quantity": 1}], CUSTOMER
    )
    assert not ok
    assert result == {"code": "payment_error", "status": 502}
    assert message == "Your card was declined."
    assert db_session.query(Order).count() == 0


def test_stripe_customer_failure_still_charges(db_session, sample_event):
    service, stub = _checkout(db_session, fail_customer=True)
    ok, _message, _result = service.create_payment_intent(
        "rockhouse", [{"eventId": sample_event.eventID, "quantity": 1}], CUSTOMER
    )
    assert ok
    assert stub.intents[0]["customer"] is None


def test_sold_tickets_reduce_capacity(db_session, sample_promoter):
    event = create_event(db_session, sample_promoter, capacity=5)
    create_order(db_session, event, quantity=4, status=OrderStatus.CONFIRMED)
    service, _stub = _checkout(db_session)

    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": event.eventID, "quantity": 2}], CUSTOMER
    )

    assert not ok
    assert result["code"] == "capacity_exceeded"


def test_holds_block_other_buyers_but_not_the_holder(db_session, sample_promoter):
    event = create_event(db_session, sample_promoter, capacity=3)
    service, _stub = _checkout(db_session)

    ok, _message, hold = service.hold_tickets(event.eventID, "cart-a", 3)
    assert ok

    other_ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": event.eventID, "quantity": 1}], CUSTOMER, session_key="cart-b"
    )
    assert not other_ok
    assert result["code"] == "capacity_exceeded"

    own_ok, _message, _result = service.create_payment_intent(
        "rockhouse", [{"eventId": event.eventID, "quantity": 3}], CUSTOMER, session_key="cart-a"
    )
    assert own_ok
    db_session.refresh(hold)
    assert hold.status == HoldStatus.CONVERTED


def test_release_hold(db_session, sample_event):
    service, _stub = _checkout(db_session)
    _ok, _message, hold = service.hold_tickets(sample_event.eventID, "cart-a", 2)

    assert service.release_hold(hold.holdID, "cart-b")[1] == "Hold not found"
    ok, _message, released = service.release_hold(hold.holdID, "cart-a")
    assert ok
    assert released.status == HoldStatus.RELEASED


def test_paid_order_is_not_counted_twice_against_its_hold(db_session, sample_promoter):
    event = create_event(db_session, sample_promoter, capacity=6)
    service, _stub = _checkout(db_session)
    service.hold_tickets(event.eventID, "cart-a", 3)
    service.hold_tickets(event.eventID, "cart-b", 1)

    ok, _message, result = service.create_payment_intent(
        "rockhouse", [{"eventId": event.eventID, "quantity": 3}], CUSTOMER, session_key="cart-a"
    )
    assert ok
    order = db_session.query(Order).filter_by(order_number=result["orderId"]).one()
    OrderService(db_session, mailer=_StubMailer()).mark_paid(order)

    assert AdminService(db_session).get_availability(event) == {
        "capacity": 6,
        "sold": 3,
        "held": 1,
        "available": 2,
    }


def test_hold_validation(db_session, sample_event):
    service, _stub = _checkout(db_session)
    assert service.hold_tickets(sample_event.eventID, "", 1)[1] == "Session key is required"
    assert service.hold_tickets(sample_event.eventID, "cart", 0)[1] == "Quantity must be positive"
    assert service.hold_tickets(9999, "cart", 1)[1] == "Event not found"
    assert service.hold_tickets(sample_event.eventID, "cart", 500)[1] == "Only 100 tickets available"
    assert service.release_hold(9999)[1] == "Hold not found"
