"""Storefront checkout: pricing, capacity checks and PaymentIntent creation."""
from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import utcnow
from boxoffice.models import (
    Customer,
    Event,
    EventStatus,
    HoldStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    SeatHold,
)
from boxoffice.observability import increment_counter, record_event
from boxoffice.services.admin_service import AdminService
from boxoffice.services.payment_service import GatewayNotConfiguredError, PaymentService
from boxoffice.services.promoter_service import PromoterService
from boxoffice.services.promotion_service import PromotionService

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

ERROR_STATUS = {
    "invalid_request": 400,
    "promoter_not_found": 404,
    "gateway_not_configured": 400,
    "capacity_exceeded": 409,
    "amount_too_small": 400,
    "payment_error": 502,
}


class CheckoutError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return ERROR_STATUS.get(self.code, 400)


def generate_order_number(now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"


class CheckoutService:
    def __init__(self, db_session: Session, payment_service: Optional[PaymentService] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.payment_service = payment_service or PaymentService(db_session)
        self.admin = AdminService(db_session)
        self.promotions = PromotionService(db_session)
        self.promoters = PromoterService(db_session)

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    def _own_held(self, event_id: int, session_key: Optional[str]) -> int:
        if not session_key:
            return 0
        now = utcnow()
        holds = (
            self.db.query(SeatHold)
            .filter(SeatHold.eventID == event_id)
            .filter(SeatHold.session_key == session_key)
            .filter(SeatHold.status == HoldStatus.ACTIVE)
            .all()
        )
        return sum(hold.quantity for hold in holds if hold.is_active(now))

    def hold_tickets(self, event_id: int, session_key: str, quantity: int) -> Tuple[bool, str, Optional[SeatHold]]:
        if not session_key:
            return False, "Session key is required", None
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            return False, "Quantity must be a whole number", None
        if quantity <= 0:
            return False, "Quantity must be positive", None

        event = self.db.get(Event, event_id)
        if event is None or event.status != EventStatus.PUBLISHED:
            return False, "Event not found", None

        availability = self.admin.get_availability(event)
        if quantity > availability["available"]:
            return False, f"Only {availability['available']} tickets available", None

        hold = SeatHold(
            eventID=event.eventID,
            session_key=session_key,
            quantity=quantity,
            status=HoldStatus.ACTIVE,
            expires_at=utcnow() + timedelta(minutes=Config.HOLD_MINUTES),
        )
        self.db.add(hold)
        self.db.commit()
        self.logger.info("Seats held", extra={"event_id": event.eventID, "quantity": quantity, "hold_id": hold.holdID})
        return True, "Tickets held", hold

    def release_hold(self, hold_id: int, session_key: Optional[str] = None) -> Tuple[bool, str, Optional[SeatHold]]:
        hold = self.db.get(SeatHold, hold_id)
        if hold is None or (session_key is not None and hold.session_key != session_key):
            return False, "Hold not found", None
        if hold.status == HoldStatus.ACTIVE:
            hold.status = HoldStatus.RELEASED
            self.db.commit()
        return True, "Hold released", hold

    def _convert_holds(self, event_ids: List[int], session_key: Optional[str]) -> int:
        """Mark the cart's live holds on these events as taken by the new order."""
        if not session_key or not event_ids:
            return 0
        now = utcnow()
        holds = (
            self.db.query(SeatHold)
            .filter(SeatHold.eventID.in_(event_ids))
            .filter(SeatHold.session_key == session_key)
            .filter(SeatHold.status == HoldStatus.ACTIVE)
            .all()
        )
        converted = 0
        for hold in holds:
            if hold.is_active(now):
                hold.status = HoldStatus.CONVERTED
                converted += 1
        return converted

    # ------------------------------------------------------------------
    # Payment intent
    # ------------------------------------------------------------------

    def _load_lines(self, promoter_id: int, items: List[Dict[str, Any]]) -> List[Tuple[Event, int, Dict[str, Any]]]:
        lines = []
        for item in items:
            try:
                event_id = int(item.get("eventId"))
                quantity = int(item.get("quantity", 1))
            except (TypeError, ValueError):
                raise CheckoutError("invalid_request", "Each item needs an eventId and a quantity")
            if quantity <= 0:
                raise CheckoutError("invalid_request", "Quantity must be positive")
            event = self.db.get(Event, event_id)
            if event is None or event.promoterID != promoter_id:
                raise CheckoutError("invalid_request", f"Event {event_id} does not belong to this promoter")
            if event.status != EventStatus.PUBLISHED:
                raise CheckoutError("invalid_request", f"{event.name} is not on sale")
            lines.append((event, quantity, item))
        return lines

    def _check_capacity(self, lines, session_key: Optional[str]) -> None:
        requested: Dict[int, int] = {}
        events: Dict[int, Event] = {}
        for event, quantity, _ in lines:
            requested[event.eventID] = requested.get(event.eventID, 0) + quantity
            events[event.eventID] = event
        for event_id, quantity in requested.items():
            available = self.admin.get_availability(events[event_id])["available"]
            available += self._own_held(event_id, session_key)
            if quantity > available:
                raise CheckoutError(
                    "capacity_exceeded",
                    f"Only {available} tickets left for {events[event_id].name}",
                )

    def _upsert_customer(self, promoter_id: int, email: str, name: str, phone: Optional[str]) -> Customer:
        customer = self.db.query(Customer).filter_by(promoterID=promoter_id, email=email).first()
        first, _, last = (name or "").strip().partition(" ")
        if customer is None:
            customer = Customer(promoterID=promoter_id, email=email)
            self.db.add(customer)
        customer.first_name = first or customer.first_name
        customer.last_name = last or customer.last_name
        customer.phone = phone or customer.phone
        return customer

    def create_payment_intent(
        self,
        promoter_slug: Optional[str],
        items: Optional[List[Dict[str, Any]]],
        customer: Optional[Dict[str, Any]] = None,
        promo_code: Optional[str] = None,
        session_key: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[bool, str, Dict[str, Any]]:
        """
        Price the cart, open a Stripe PaymentIntent and store a pending order.

        Failures come back as ``(False, message, {"code": ...})``.
        """
        try:
            return True, "Payment intent created", self._create_payment_intent(
                promoter_slug, items, customer or {}, promo_code, session_key, user_id
            )
        except CheckoutError as exc:
            self.logger.info("Checkout rejected", extra={"code": exc.code, "reason": exc.message})
            increment_counter("checkout_rejected_total", labels={"code": exc.code})
            return False, exc.message, {"code": exc.code, "status": exc.status_code}

    def _create_payment_intent(self, promoter_slug, items, customer, promo_code, session_key, user_id) -> Dict[str, Any]:
        if not items or not isinstance(items, list) or not promoter_slug:
            raise CheckoutError("invalid_request", "Items and promoter are required")
        email = (customer.get("email") or "").strip().lower()
        if not email:
            raise CheckoutError("invalid_request", "Customer e-mail is required")
        name = (customer.get("name") or "").strip()
        phone = customer.get("phone")

        promoter = self.promoters.get_by_slug(promoter_slug)
        if promoter is None:
            raise CheckoutError("promoter_not_found", "Promoter not found")

        try:
            api_key = self.payment_service.get_secret_key(promoter)
        except GatewayNotConfiguredError as exc:
            raise CheckoutError("gateway_not_configured", str(exc))

        lines = self._load_lines(promoter.promoterID, items)
        self._check_capacity(lines, session_key)

        gross = round(sum(float(event.ticket_price) * quantity for event, quantity, _ in lines), 2)
        discount = 0.0
        promotion_id = None
        normalized_code = None
        if promo_code:
            ok, message, promotion = self.promotions.validate_code(promo_code, promoter.promoterID, lines[0][0].eventID)
            if not ok:
                raise CheckoutError("invalid_request", message)
            discount = self.promotions.calculate_discount(promotion, gross)
            promotion_id = promotion["id"]
            normalized_code = promotion["code"]
        subtotal = round(gross - discount, 2)
        service_fee = round(subtotal * Config.SERVICE_FEE_RATE, 2)
        total = round(subtotal + service_fee, 2)
        amount_cents = int(round(total * 100))
        if amount_cents < Config.MIN_CHARGE_CENTS:
            raise CheckoutError("amount_too_small", "Order total is below the minimum charge")

        ok, message, stripe_customer_id = self.payment_service.find_or_create_customer(api_key, email, name or None, phone)
        if not ok:
            # The charge still works without a Stripe customer record.
            stripe_customer_id = None

        order_number = generate_order_number()
        event_ids = sorted({event.eventID for event, _, _ in lines})
        metadata = {
            "orderId": order_number,
            "promoterId": str(promoter.promoterID),
            "promoterSlug": promoter.slug,
            "eventIds": ",".join(str(event_id) for event_id in event_ids),
            "customerEmail": email,
        }
        ok, message, intent = self.payment_service.create_payment_intent(
            api_key,
            amount_cents,
            metadata=metadata,
            customer_id=stripe_customer_id,
            receipt_email=email,
        )
        if not ok:
            raise CheckoutError("payment_error", message)

        customer_row = self._upsert_customer(promoter.promoterID, email, name, phone)
        order = Order(
            order_number=order_number,
            promoterID=promoter.promoterID,
            eventID=lines[0][0].eventID,
            customer=customer_row,
            userID=user_id,
            customer_email=email,
            customer_name=name or None,
            customer_phone=phone,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal=subtotal,
            discount=discount,
            service_fee=service_fee,
            total=total,
            currency=Config.DEFAULT_CURRENCY,
            promo_code=normalized_code,
            promotionID=promotion_id,
            payment_intent_id=intent.id,
            stripe_customer_id=stripe_customer_id,
            source="web",
        )
        for event, quantity, item in lines:
            order.items.append(
                OrderItem(
                    eventID=event.eventID,
                    quantity=quantity,
                    unit_price=float(event.ticket_price),
                    description=item.get("description") or event.name,
                    section=item.get("section"),
                )
            )
        self.db.add(order)
        converted = self._convert_holds(event_ids, session_key)
        self.db.commit()

        increment_counter("orders_created_total")
        record_event("order_created", {"order_number": order_number, "promoter_id": promoter.promoterID, "total": total})
        self.logger.info(
            "Pending order %s created",
            order_number,
            extra={"order_id": order.orderID, "payment_intent": intent.id, "amount_cents": amount_cents, "holds_converted": converted},
        )
        return {
            "clientSecret": intent.client_secret,
            "paymentIntentId": intent.id,
            "orderId": order_number,
            "amount": total,
            "subtotal": subtotal,
            "serviceFee": service_fee,
            "discount": discount,
        }
