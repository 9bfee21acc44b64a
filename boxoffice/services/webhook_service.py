"""Stripe webhook verification and event handlers."""
from __future__ import annotations

import logging
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.models import Order, OrderStatus, PaymentStatus, TicketStatus
from boxoffice.observability import increment_counter
from boxoffice.services.order_service import OrderService, _field
from boxoffice.services.promoter_service import PromoterService

logger = logging.getLogger(__name__)


class WebhookSecretMissingError(Exception):
    pass


def resolve_webhook_secret(db: Session, promoter_slug: Optional[str] = None) -> str:
    """A promoter's own webhook secret when routed by slug, else the platform one."""
    if promoter_slug:
        promoter = PromoterService(db).get_by_slug(promoter_slug)
        gateway = promoter.gateway if promoter is not None else None
        if gateway is not None and gateway.webhook_secret:
            return gateway.webhook_secret
    if Config.STRIPE_WEBHOOK_SECRET:
        return Config.STRIPE_WEBHOOK_SECRET
    raise WebhookSecretMissingError("Webhook secret not configured")


def construct_event(payload: bytes, sig_header: str, secret: str):
    """Raises ``stripe.SignatureVerificationError`` or ``ValueError`` on bad input."""
    return stripe.Webhook.construct_event(payload, sig_header, secret)


class StripeEventHandler:
    """Routes each Stripe event to ``handle_<type with dots as underscores>``."""

    def __init__(self, db_session: Session, event: Any, order_service: Optional[OrderService] = None) -> None:
        self.db = db_session
        self.event = event
        self.orders = order_service or OrderService(db_session)

    @property
    def event_type(self) -> str:
        return _field(self.event, "type") or ""

    @property
    def payload_object(self) -> Any:
        return _field(self.event, "data", "object")

    def handle(self) -> None:
        increment_counter("stripe_webhooks_total", labels={"type": self.event_type})
        handler_method = getattr(
            self,
            f"handle_{self.event_type.replace('.', '_')}",
            self.handle_unknown_event,
        )
        handler_method(self.payload_object)

    def handle_unknown_event(self, _obj: Any) -> None:
        logger.info(
            "Unhandled Stripe event",
            extra={"event_type": self.event_type, "event_id": _field(self.event, "id")},
        )

    def _find_order(self, payment_intent_id: Optional[str], metadata: Any) -> Optional[Order]:
        order = None
        if payment_intent_id:
            order = self.db.query(Order).filter(Order.payment_intent_id == payment_intent_id).first()
        if order is None:
            order_ref = _field(metadata, "orderId")
            if order_ref:
                order = self.orders.get_order(order_ref)
        if order is None:
            logger.warning(
                "Stripe event for unknown order",
                extra={"event_type": self.event_type, "payment_intent": payment_intent_id},
            )
        return order

    def handle_payment_intent_succeeded(self, intent: Any) -> None:
        order = self._find_order(_field(intent, "id"), _field(intent, "metadata"))
        if order is None:
            return
        if OrderStatus(order.status) == OrderStatus.CONFIRMED:
            logger.warning("Duplicate payment success webhook", extra={"order_id": order.orderID})
            return
        self.orders.mark_paid(order, intent)

    def handle_payment_intent_payment_failed(self, intent: Any) -> None:
        order = self._find_order(_field(intent, "id"), _field(intent, "metadata"))
        if order is None:
            return
        reason = _field(intent, "last_payment_error", "message") or "Payment failed"
        self.orders.mark_failed(order, reason)

    def handle_charge_refunded(self, charge: Any) -> None:
        order = self._find_order(_field(charge, "payment_intent"), _field(charge, "metadata"))
        if order is None:
            return

        current = OrderStatus(order.status)
        if current not in (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED):
            logger.warning(
                "Refund webhook for unpaid order",
                extra={"order_id": order.orderID, "status": current.value},
            )
            return

        amount_refunded = (_field(charge, "amount_refunded") or 0) / 100
        amount = _field(charge, "amount")
        fully_refunded = bool(_field(charge, "refunded")) or (amount is not None and amount_refunded * 100 >= amount)
        target = OrderStatus.REFUNDED if fully_refunded or current == OrderStatus.REFUNDED else OrderStatus.PARTIALLY_REFUNDED

        order.refunded_amount = round(amount_refunded, 2)
        if current != target and order.can_transition(target):
            order.transition_to(target)
        order.payment_status = PaymentStatus.REFUNDED if target == OrderStatus.REFUNDED else PaymentStatus.PARTIALLY_REFUNDED
        if target == OrderStatus.REFUNDED:
            self.orders.cancel_tickets(order, TicketStatus.CANCELLED)
        self.db.commit()
        logger.info(
            "Order refund recorded from webhook",
            extra={"order_id": order.orderID, "refunded_amount": float(order.refunded_amount), "status": target.value},
        )
