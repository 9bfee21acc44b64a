from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.models import Order, OrderStatus, PaymentStatus, Refund, TicketStatus
from boxoffice.observability import increment_counter, record_event
from boxoffice.services.access import PromoterAccess
from boxoffice.services.order_service import OrderService
from boxoffice.services.payment_service import PaymentService

REFUNDABLE_STATUSES = {OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED}


class RefundService:
    """Coordinates refund execution via PaymentService and ticket cancellation."""

    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        order_service: Optional[OrderService] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.payment_service = payment_service or PaymentService(db_session)
        self.order_service = order_service or OrderService(db_session, payment_service=self.payment_service)

    def list_refunds(self, access: PromoterAccess, order_id: Optional[int] = None):
        query = self.db.query(Refund).join(Order, Order.orderID == Refund.orderID)
        query = access.scope_query(query, Order.promoterID)
        if order_id is not None:
            query = query.filter(Refund.orderID == order_id)
        return query.order_by(Refund.created_at.desc()).all()

    def process_refund(
        self,
        order_id: int | str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
        access: Optional[PromoterAccess] = None,
    ) -> Tuple[bool, str, Optional[Refund]]:
        """Refund all or part of a paid order through the gateway."""
        order = self.order_service.get_order(order_id)
        if order is None or (access is not None and not access.can_access(order.promoterID)):
            return False, "Order not found", None

        status = OrderStatus(order.status)
        if status not in REFUNDABLE_STATUSES:
            return False, f"Order is not refundable (current status: {status.value})", None

        remaining = order.refundable_amount
        if remaining <= 0:
            return False, "Order has already been fully refunded", None
        if amount is not None and not math.isfinite(float(amount)):
            return False, "Refund amount must be a finite number", None
        refund_amount = round(float(amount), 2) if amount is not None else remaining
        if refund_amount <= 0:
            return False, "Refund amount must be positive", None
        if refund_amount > remaining:
            return False, f"Refund amount exceeds refundable balance of {remaining:.2f}", None

        refund = Refund(orderID=order.orderID, amount=refund_amount, reason=reason)
        self.db.add(refund)
        self.db.flush()

        success, message, reference = self.payment_service.refund(order, refund_amount)
        if success:
            refund.mark_completed(reference)
            order.refunded_amount = round(float(order.refunded_amount or 0) + refund_amount, 2)
            fully_refunded = order.refundable_amount <= 0
            target = OrderStatus.REFUNDED if fully_refunded else OrderStatus.PARTIALLY_REFUNDED
            if OrderStatus(order.status) != target:
                order.transition_to(target)
            order.payment_status = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED
            if fully_refunded:
                self.order_service.cancel_tickets(order, TicketStatus.CANCELLED)
            self.db.commit()
            increment_counter("refunds_completed_total")
            record_event(
                "refund_completed",
                {"order_id": order.orderID, "refund_id": refund.refundID, "amount": refund_amount},
            )
            self.logger.info(
                "Refund completed for order %s",
                order.order_number,
                extra={"refund_id": refund.refundID, "amount": refund_amount},
            )
            return True, message, refund

        refund.mark_failed(message)
        self.db.commit()
        increment_counter("refunds_failed_total")
        record_event("refund_failed", {"order_id": order.orderID, "reason": message})
        self.logger.warning(
            "Refund failed for order %s",
            order.order_number,
            extra={"reason": message},
        )
        return False, message, refund
