"""
Order lifecycle: status changes, ticket issuance and payment reconciliation.

Stripe tells us about payments through webhooks, but a buyer may land on the
confirmation page before the webhook does. ``reconcile_order`` asks Stripe
directly in that case so the page never shows a stale pending order.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from boxoffice.database import utcnow
from boxoffice.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Ticket,
    TicketStatus,
)
from boxoffice.observability import increment_counter, record_event
from boxoffice.services.mailer import Mailer, render_order_confirmation
from boxoffice.services.notification_service import publish_order_confirmed
from boxoffice.services.payment_service import GatewayNotConfiguredError, PaymentService
from boxoffice.services.promotion_service import PromotionService

CARD_BRANDS = {
    "visa": "Visa",
    "mastercard": "Mastercard",
    "amex": "American Express",
    "discover": "Discover",
    "diners": "Diners Club",
    "jcb": "JCB",
    "unionpay": "UnionPay",
}

FAILED_INTENT_STATUSES = {"requires_payment_method", "canceled"}


def format_time(value: Optional[str]) -> str:
    """``"19:30"`` -> ``"7:30 PM"``. Unparseable input comes back as-is."""
    if not value:
        return ""
    try:
        hours_text, minutes_text = str(value).split(":")[:2]
        hours, minutes = int(hours_text), int(minutes_text)
    except ValueError:
        return str(value)
    suffix = "PM" if hours >= 12 else "AM"
    display_hour = hours % 12 or 12
    return f"{display_hour}:{minutes:02d} {suffix}"


def format_venue_location(venue) -> str:
    if venue is None:
        return ""
    return ", ".join(part for part in (venue.city, venue.state) if part)


def format_venue_address(venue) -> str:
    if venue is None:
        return ""
    state_zip = " ".join(part for part in (venue.state, venue.zip_code) if part)
    return ", ".join(part for part in (venue.address, venue.city, state_zip) if part)


def format_payment_method(brand: Optional[str], last4: Optional[str]) -> str:
    if not brand and not last4:
        return "Card"
    label = CARD_BRANDS.get((brand or "").lower(), (brand or "Card").title())
    return f"{label} ending in {last4}" if last4 else label


def _field(obj: Any, *path: str) -> Any:
    """Walk dicts / Stripe objects; any missing hop yields None."""
    current = obj
    for key in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def serialize_order(order: Order) -> Dict[str, Any]:
    tickets = [ticket.to_dict() for ticket in order.tickets]
    event = order.event
    return {
        "id": order.orderID,
        "orderNumber": order.order_number,
        "promoterId": order.promoterID,
        "eventId": order.eventID,
        "eventName": event.name if event else None,
        "eventDate": event.start_at.isoformat() if event and event.start_at else None,
        "doorTime": format_time(event.door_time) if event else "",
        "venue": format_venue_location(event.venue) if event else "",
        "customer": {
            "name": order.customer_name,
            "email": order.customer_email,
            "phone": order.customer_phone,
        },
        "status": OrderStatus(order.status).value,
        "paymentStatus": PaymentStatus(order.payment_status).value,
        "subtotal": float(order.subtotal or 0),
        "discount": float(order.discount or 0),
        "serviceFee": float(order.service_fee or 0),
        "total": float(order.total or 0),
        "refundedAmount": float(order.refunded_amount or 0),
        "promoCode": order.promo_code,
        "paymentMethod": format_payment_method(order.card_brand, order.card_last4),
        "receiptUrl": order.receipt_url,
        "failureReason": order.failure_reason,
        "source": order.source,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "paidAt": order.paid_at.isoformat() if order.paid_at else None,
        "ticketCount": order.ticket_count,
        "tickets": tickets,
        "qrCode": tickets[0]["qrCode"] if tickets else f"QR-{order.order_number}",
    }


class OrderService:
    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.payment_service = payment_service or PaymentService(db_session)
        self.mailer = mailer or Mailer()
        self.promotions = PromotionService(db_session)

    def get_order(self, identifier: Any) -> Optional[Order]:
        """Look up by numeric id, then order number, then payment intent id."""
        if identifier is None or identifier == "":
            return None
        text = str(identifier).strip()
        if text.isdigit():
            order = self.db.get(Order, int(text))
            if order is not None:
                return order
        order = self.db.query(Order).filter(Order.order_number == text).first()
        if order is not None:
            return order
        return self.db.query(Order).filter(Order.payment_intent_id == text).first()

    def get_public_order(self, identifier: Any) -> Optional[Order]:
        """Buyer-facing lookup: order number or payment intent id, never the row id."""
        text = str(identifier or "").strip()
        if not text or text.isdigit():
            return None
        return self.get_order(text)

    def update_order_status(self, order: Order, status: OrderStatus | str) -> Order:
        new_status = OrderStatus(status)
        if OrderStatus(order.status) == new_status:
            return order
        order.transition_to(new_status)
        if new_status == OrderStatus.CONFIRMED:
            order.payment_status = PaymentStatus.PAID
            if order.paid_at is None:
                order.paid_at = utcnow()
        elif new_status == OrderStatus.FAILED:
            order.payment_status = PaymentStatus.FAILED
        elif new_status == OrderStatus.REFUNDED:
            order.payment_status = PaymentStatus.REFUNDED
        elif new_status == OrderStatus.PARTIALLY_REFUNDED:
            order.payment_status = PaymentStatus.PARTIALLY_REFUNDED
        self.db.commit()
        self.logger.info(
            "Order status updated",
            extra={"order_id": order.orderID, "status": new_status.value},
        )
        return order

    def issue_tickets(self, order: Order) -> List[Ticket]:
        if order.tickets:
            return []
        issued: List[Ticket] = []
        number = 1
        for item in order.items:
            for _ in range(item.quantity):
                code = f"TKT-{order.order_number}-{number}"
                ticket = Ticket(
                    ticket_code=code,
                    eventID=item.eventID,
                    orderItemID=item.orderItemID,
                    status=TicketStatus.VALID,
                    holder_name=order.customer_name,
                    section=item.section,
                    qr_code=f"BOXOFFICE|{code}|{item.eventID}",
                )
                order.tickets.append(ticket)
                issued.append(ticket)
                number += 1
        if issued:
            increment_counter("tickets_issued_total", amount=len(issued))
        return issued

    def cancel_tickets(self, order: Order, status: TicketStatus = TicketStatus.CANCELLED) -> int:
        changed = 0
        for ticket in order.tickets:
            if ticket.status == TicketStatus.VALID:
                ticket.status = status
                changed += 1
        return changed

    def _apply_charge_details(self, order: Order, payment_intent: Any) -> None:
        charge = _field(payment_intent, "latest_charge")
        if isinstance(charge, str) or charge is None:
            charges = _field(payment_intent, "charges", "data") or []
            charge = charges[0] if charges else None
        if charge is None:
            return
        order.receipt_url = _field(charge, "receipt_url") or order.receipt_url
        card = _field(charge, "payment_method_details", "card")
        if card is not None:
            order.card_brand = _field(card, "brand") or order.card_brand
            order.card_last4 = _field(card, "last4") or order.card_last4
        method_type = _field(charge, "payment_method_details", "type")
        if method_type:
            order.payment_method_type = method_type

    def mark_paid(self, order: Order, payment_intent: Any = None) -> Tuple[bool, str, Order]:
        current = OrderStatus(order.status)
        if current == OrderStatus.CONFIRMED and order.payment_status == PaymentStatus.PAID:
            return True, "Order already confirmed", order
        if current not in (OrderStatus.PENDING, OrderStatus.FAILED):
            return False, f"Order cannot be confirmed from status {current.value}", order

        order.transition_to(OrderStatus.CONFIRMED)
        order.payment_status = PaymentStatus.PAID
        order.paid_at = order.paid_at or utcnow()
        order.failure_reason = None
        if payment_intent is not None:
            self._apply_charge_details(order, payment_intent)
        self.issue_tickets(order)
        self.promotions.redeem(order.promotionID)
        self.db.commit()

        increment_counter("orders_confirmed_total")
        record_event(
            "order_paid",
            {"order_id": order.orderID, "order_number": order.order_number, "total": float(order.total or 0)},
        )
        self.logger.info(
            "Order %s confirmed",
            order.order_number,
            extra={"order_id": order.orderID, "payment_intent": order.payment_intent_id},
        )
        self._send_confirmation(order)
        publish_order_confirmed(self.db, order)
        return True, "Order confirmed", order

    def _send_confirmation(self, order: Order) -> None:
        if not order.customer_email:
            return
        subject, html = render_order_confirmation(order)
        success, message, _ = self.mailer.send(order.customer_email, subject, html, tags=["order_confirmation"])
        if not success:
            self.logger.warning(
                "Order confirmation e-mail failed",
                extra={"order_id": order.orderID, "reason": message},
            )

    def mark_failed(self, order: Order, reason: Optional[str] = None) -> Tuple[bool, str, Order]:
        current = OrderStatus(order.status)
        if current not in (OrderStatus.PENDING, OrderStatus.FAILED):
            return False, f"Order cannot fail from status {current.value}", order
        if current == OrderStatus.PENDING:
            order.transition_to(OrderStatus.FAILED)
            increment_counter("orders_failed_total")
        order.payment_status = PaymentStatus.FAILED
        order.failure_reason = reason or "Payment failed"
        self.db.commit()
        self.logger.info(
            "Order %s marked failed",
            order.order_number,
            extra={"order_id": order.orderID, "reason": order.failure_reason},
        )
        return True, "Order marked failed", order

    def cancel_order(self, order: Order) -> Tuple[bool, str, Order]:
        if not order.can_transition(OrderStatus.CANCELLED):
            return False, f"Order cannot be cancelled from status {OrderStatus(order.status).value}", order
        order.transition_to(OrderStatus.CANCELLED)
        self.cancel_tickets(order)
        self.db.commit()
        return True, "Order cancelled", order

    def reconcile_order(
        self,
        order: Order,
        redirect_status: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        """
        Bring a pending or failed order in line with what Stripe knows.

        A ``redirect_status`` of ``succeeded`` is only taken at its word when
        it arrives with the order's own payment intent id; otherwise Stripe
        is asked.

        Orders in any other status are returned untouched. Gateway or
        configuration problems are logged and leave the order as stored.
        """
        if OrderStatus(order.status) not in (OrderStatus.PENDING, OrderStatus.FAILED):
            return order

        if (
            redirect_status == "succeeded"
            and payment_intent_id
            and order.payment_intent_id
            and payment_intent_id == order.payment_intent_id
        ):
            self.mark_paid(order)
            self._record_outcome(order, "redirect_confirmed")
            return order

        if not order.payment_intent_id:
            self._record_outcome(order, "no_payment_intent")
            return order

        try:
            api_key = self.payment_service.get_secret_key(order.promoterID)
            intent = self.payment_service.retrieve_payment_intent(api_key, order.payment_intent_id)
        except GatewayNotConfiguredError as exc:
            self.logger.warning(
                "Cannot reconcile order without a gateway",
                extra={"order_id": order.orderID, "error": str(exc)},
            )
            self._record_outcome(order, "error")
            return order
        except stripe.StripeError as exc:
            self.logger.warning(
                "Stripe lookup failed during reconciliation",
                extra={"order_id": order.orderID, "payment_intent": order.payment_intent_id, "error": str(exc)},
            )
            self._record_outcome(order, "error")
            return order

        intent_status = _field(intent, "status")
        if intent_status == "succeeded":
            self.mark_paid(order, intent)
            outcome = "confirmed"
        elif intent_status in FAILED_INTENT_STATUSES:
            reason = _field(intent, "last_payment_error", "message") or f"Payment {intent_status}"
            self.mark_failed(order, reason)
            outcome = "failed"
        else:
            outcome = "unchanged"
        self._record_outcome(order, outcome)
        return order

    def _record_outcome(self, order: Order, outcome: str) -> None:
        increment_counter("orders_reconciled_total", labels={"outcome": outcome})
        self.logger.info(
            "Order reconciliation finished",
            extra={"order_id": order.orderID, "outcome": outcome},
        )
