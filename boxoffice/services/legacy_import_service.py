"""
Import of order and event documents exported from the old storefront.

Those documents were written by several generations of the app, so the same
value can live under different keys. ``normalize_order`` and
``normalize_event`` flatten every known shape before anything is stored.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    Event,
    EventStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Ticket,
    TicketStatus,
)

logger = logging.getLogger(__name__)

_EVENT_STATUS_ALIASES = {"active": EventStatus.PUBLISHED, "live": EventStatus.PUBLISHED}
_PAID = {OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accepts ISO strings, epoch seconds/millis and Firestore ``{seconds: ...}`` maps."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        return datetime.fromtimestamp(float(seconds) + nanos / 1e9, tz=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def normalize_order(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    tickets = data.get("tickets") if isinstance(data.get("tickets"), list) else []
    total = sum(_number(ticket.get("price") or ticket.get("ticketPrice")) for ticket in tickets)
    if not total:
        total = (
            _number((data.get("pricing") or {}).get("total"))
            or _number(data.get("totalAmount"))
            or _number(data.get("total"))
        )

    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    status = OrderStatus(data.get("status") or OrderStatus.CONFIRMED.value)
    return {
        "id": doc_id,
        "orderNumber": data.get("orderNumber") or data.get("orderId") or doc_id,
        "customerName": customer.get("name") or data.get("customerName") or "Unknown",
        "customerEmail": (customer.get("email") or data.get("customerEmail") or "").strip().lower(),
        "customerPhone": customer.get("phone") or data.get("customerPhone") or "",
        "eventId": data.get("eventId") or "",
        "eventName": data.get("eventName") or "",
        "tickets": tickets,
        "quantity": len(tickets) or int(data.get("quantity") or 1),
        "total": round(total, 2),
        "status": status,
        "paymentMethod": data.get("paymentMethod") or "card",
        "promoterId": data.get("promoterId") or None,
        "createdAt": parse_timestamp(data.get("purchaseDate") or data.get("createdAt")) or utcnow(),
        "qrCode": data.get("qrCode") or f"QR-{doc_id}",
    }


def normalize_event(doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    schedule = data.get("schedule") if isinstance(data.get("schedule"), dict) else {}
    pricing = data.get("pricing") if isinstance(data.get("pricing"), dict) else {}
    venue = data.get("venue") if isinstance(data.get("venue"), dict) else {}
    raw_status = (data.get("status") or "published").lower()
    status = _EVENT_STATUS_ALIASES.get(raw_status) or EventStatus(raw_status)
    start = parse_timestamp(
        data.get("startAt") or data.get("date") or data.get("startDate") or schedule.get("date")
    )
    return {
        "id": doc_id,
        "name": data.get("name") or data.get("title") or "Untitled event",
        "description": data.get("description") or "",
        "category": data.get("category"),
        "image": data.get("imageUrl") or data.get("image"),
        "startAt": start,
        "doorTime": data.get("time") or data.get("doorTime") or schedule.get("time"),
        "price": _number(data.get("price") or pricing.get("basePrice") or data.get("ticketPrice")),
        "capacity": data.get("capacity") or data.get("totalCapacity") or venue.get("capacity"),
        "status": status,
        "promoterId": data.get("promoterId") or None,
    }


class LegacyImportService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logger

    @staticmethod
    def _split(doc: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        data = dict(doc)
        doc_id = str(data.pop("id", "") or data.get("orderId") or "")
        return doc_id, data

    def import_events(
        self,
        documents: Iterable[Dict[str, Any]],
        promoter_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Returns counts plus ``eventMap`` (legacy id -> new event id)."""
        summary: Dict[str, Any] = {"imported": 0, "skipped": 0, "errors": [], "eventMap": {}}
        for doc in documents:
            doc_id, data = self._split(doc)
            try:
                normalized = normalize_event(doc_id, data)
            except (TypeError, ValueError) as exc:
                summary["errors"].append({"id": doc_id, "error": str(exc)})
                continue
            if normalized["startAt"] is None:
                summary["errors"].append({"id": doc_id, "error": "Event has no date"})
                continue

            owner = promoter_id or _as_int(normalized["promoterId"])
            existing = (
                self.db.query(Event)
                .filter(Event.name == normalized["name"])
                .filter(Event.start_at == normalized["startAt"])
                .filter(Event.promoterID.is_(owner) if owner is None else Event.promoterID == owner)
                .first()
            )
            if existing is not None:
                summary["skipped"] += 1
                summary["eventMap"][doc_id] = existing.eventID
                continue

            event = Event(
                promoterID=owner,
                name=normalized["name"],
                description=normalized["description"],
                category=normalized["category"],
                image_url=normalized["image"],
                start_at=normalized["startAt"],
                door_time=normalized["doorTime"],
                ticket_price=normalized["price"],
                total_capacity=_as_int(normalized["capacity"]),
                status=normalized["status"],
            )
            self.db.add(event)
            self.db.flush()
            summary["eventMap"][doc_id] = event.eventID
            summary["imported"] += 1

        self.db.commit()
        self.logger.info("Legacy events imported", extra={k: v for k, v in summary.items() if k != "eventMap"})
        return summary

    def import_orders(
        self,
        documents: Iterable[Dict[str, Any]],
        promoter_id: Optional[int] = None,
        event_map: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        """Idempotent on order number: already imported orders are skipped."""
        event_map = event_map or {}
        summary: Dict[str, Any] = {"imported": 0, "skipped": 0, "errors": []}
        for doc in documents:
            doc_id, data = self._split(doc)
            try:
                normalized = normalize_order(doc_id, data)
            except (TypeError, ValueError) as exc:
                summary["errors"].append({"id": doc_id, "error": str(exc)})
                continue

            if self.db.query(Order.orderID).filter(Order.order_number == normalized["orderNumber"]).first():
                summary["skipped"] += 1
                continue

            event_id = self._resolve_event(normalized["eventId"], event_map)
            if event_id is None:
                summary["errors"].append({"id": doc_id, "error": f"Unknown event {normalized['eventId']!r}"})
                continue

            self.db.add(self._build_order(normalized, event_id, promoter_id))
            summary["imported"] += 1

        self.db.commit()
        self.logger.info("Legacy orders imported", extra=dict(summary, errors=len(summary["errors"])))
        return summary

    def _resolve_event(self, legacy_id: Any, event_map: Dict[str, int]) -> Optional[int]:
        if legacy_id in (None, ""):
            return None
        if str(legacy_id) in event_map:
            return event_map[str(legacy_id)]
        numeric = _as_int(legacy_id)
        if numeric is not None and self.db.get(Event, numeric) is not None:
            return numeric
        return None

    def _build_order(self, normalized: Dict[str, Any], event_id: int, promoter_id: Optional[int]) -> Order:
        event = self.db.get(Event, event_id)
        status: OrderStatus = normalized["status"]
        quantity = max(1, normalized["quantity"])
        total = normalized["total"]
        order = Order(
            order_number=normalized["orderNumber"],
            promoterID=promoter_id or _as_int(normalized["promoterId"]) or event.promoterID,
            eventID=event_id,
            customer_email=normalized["customerEmail"] or None,
            customer_name=normalized["customerName"],
            customer_phone=normalized["customerPhone"] or None,
            status=status,
            payment_status=PaymentStatus.PAID if status in _PAID else PaymentStatus.PENDING,
            subtotal=total,
            service_fee=0,
            discount=0,
            total=total,
            refunded_amount=total if status == OrderStatus.REFUNDED else 0,
            payment_method_type=normalized["paymentMethod"],
            source="legacy",
            created_at=normalized["createdAt"],
            paid_at=normalized["createdAt"] if status in _PAID else None,
        )
        item = OrderItem(
            eventID=event_id,
            quantity=quantity,
            unit_price=round(total / quantity, 2),
            description=normalized["eventName"] or event.name,
        )
        order.items.append(item)

        if status in _PAID:
            legacy_tickets = normalized["tickets"] or [{} for _ in range(quantity)]
            for number, legacy in enumerate(legacy_tickets, start=1):
                code = f"TKT-{order.order_number}-{number}"
                order.tickets.append(
                    Ticket(
                        ticket_code=code,
                        eventID=event_id,
                        status=TicketStatus.VALID if status != OrderStatus.REFUNDED else TicketStatus.CANCELLED,
                        holder_name=normalized["customerName"],
                        section=legacy.get("section"),
                        qr_code=legacy.get("qrCode") or normalized["qrCode"],
                    )
                )
        return order


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
