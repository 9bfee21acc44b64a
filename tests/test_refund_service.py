from __future__ import annotations

from boxoffice.models import OrderStatus, PaymentStatus, RefundStatus, TicketStatus, UserRole
from boxoffice.services.access import PromoterAccess
from boxoffice.services.order_service import OrderService
from boxoffice.services.refund_service import RefundService
from conftest import create_order, create_promoter, create_user


class _StubPaymentService:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.calls = []

    def refund(self, order, amount):
        self.calls.append((order.order_number, amount))
        if self.succeed:
            return True, "Refund processed", f"re_{len(self.calls)}"
        return False, "Charge has already been refunded", None


class _StubMailer:
    def send(self, to, subject, html, tags=None, sender=None):
        return True, "Sent", "msg_1"


def _service(db_session, succeed=True):
    payments = _StubPaymentService(succeed)
    orders = OrderService(db_session, payment_service=payments, mailer=_StubMailer())
    return RefundService(db_session, payment_service=payments, order_service=orders), payments


def _paid_order(db_session, event):
    order = create_order(db_session, event, quantity=2, status=OrderStatus.PENDING)
    OrderService(db_session, mailer=_StubMailer()).mark_paid(order)
    return order


def test_full_refund_defaults_to_remaining_balance(db_session, sample_event):
    order = _paid_order(db_session, sample_event)
    service, payments = _service(db_session)

    success, _message, refund = service.process_refund(order.orderID, reason="Event cancelled")

    assert success
    assert refund.status == RefundStatus.COMPLETED
    assert refund.external_reference == "re_1"
    assert float(refund.amount) == 110.0
    assert payments.calls == [(order.order_number, 110.0)]
    db_session.refresh(order)
    assert order.status == OrderStatus.REFUNDED
    assert order.payment_status == PaymentStatus.REFUNDED
    assert all(ticket.status == TicketStatus.CANCELLED for ticket in order.tickets)


def test_partial_refunds_accumulate(db_session, sample_event):
    order = _paid_order(db_session, sample_event)
    service, _payments = _service(db_session)

    success, _message, _refund = service.process_refund(order.order_number, amount=30)
    assert success
    db_session.refresh(order)
    assert order.status == OrderStatus.PARTIALLY_REFUNDED
    assert float(order.refunded_amount) == 30.0
    assert all(ticket.status == TicketStatus.VALID for ticket in order.tickets)

    success, message, _refund = service.process_refund(order.orderID, amount=100)
    assert not success
    assert message == "Refund amount exceeds refundable balance of 80.00"

    success, _message, _refund = service.process_refund(order.orderID, amount=80)
    assert success
    db_session.refresh(order)
    assert order.status == OrderStatus.REFUNDED


def test_refund_rejections(db_session, sample_event, sample_order):
    service, payments = _service(db_session)

    assert service.process_refund(99999)[1] == "Order not found"
    assert service.process_refund(sample_order.orderID)[1] == "Order is not refundable (current status: pending)"

    order = _paid_order(db_session, sample_event)
    assert service.process_refund(order.orderID, amount=0)[1] == "Refund amount must be positive"
    assert service.process_refund(order.orderID, amount=float("nan"))[1] == "Refund amount must be a finite number"
    assert service.process_refund(order.orderID, amount=float("inf"))[1] == "Refund amount must be a finite number"
    assert payments.calls == []


def test_gateway_failure_leaves_order_paid(db_session, sample_event):
    order = _paid_order(db_session, sample_event)
    service, _payments = _service(db_session, succeed=False)

    success, message, refund = service.process_refund(order.orderID, amount=20)

    assert not success
    assert message == "Charge has already been refunded"
    assert refund.status == RefundStatus.FAILED
    assert refund.failure_reason == message
    db_session.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert float(order.refunded_amount or 0) == 0.0


def test_promoter_cannot_refund_other_promoters_order(db_session, sample_event):
    order = _paid_order(db_session, sample_event)
    other = create_promoter(db_session, slug="other-house")
    user = create_user(db_session, role=UserRole.PROMOTER.value, promoter=other)
    service, _payments = _service(db_session)

    success, message, _refund = service.process_refund(order.orderID, access=PromoterAccess.for_user(user))

    assert not success
    assert message == "Order not found"
