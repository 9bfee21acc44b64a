from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    Event,
    EventStatus,
    HoldStatus,
    Order,
    OrderItem,
    OrderStatus,
    SeatHold,
    Venue,
)
from boxoffice.services.access import PromoterAccess
from boxoffice.services.order_service import serialize_order

SOLD_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED)
_DOOR_TIME_ERROR = "Door time must be HH:MM (24 hour)"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _validate_door_time(value: Optional[str]) -> Optional[str]:
    if value in (None, ""):
        return None
    try:
        hours, minutes = (int(part) for part in str(value).split(":"))
    except ValueError:
        raise ValueError(_DOOR_TIME_ERROR)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(_DOOR_TIME_ERROR)
    return f"{hours:02d}:{minutes:02d}"


class AdminService:
    """Back-office reads and writes for venues, events, orders and customers."""

    serialize_order = staticmethod(serialize_order)

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Venues
    # ------------------------------------------------------------------

    def list_venues(self, access: PromoterAccess) -> List[Venue]:
        return access.scope_query(self.db.query(Venue), Venue.promoterID).order_by(Venue.name).all()

    def save_venue(self, access: PromoterAccess, data: Dict[str, Any], venue_id: Optional[int] = None) -> Tuple[bool, str, Optional[Venue]]:
        if venue_id is not None:
            venue = self.db.get(Venue, venue_id)
            if venue is None or not access.can_access(venue.promoterID):
                return False, "Venue not found", None
        else:
            if not (data.get("name") or "").strip():
                return False, "Venue name is required", None
            venue = Venue(promoterID=access.owning_promoter(data.get("promoterId")))
            self.db.add(venue)

        if data.get("name"):
            venue.name = data["name"].strip()
        for key, attr in (("address", "address"), ("city", "city"), ("state", "state"), ("zip", "zip_code")):
            if key in data:
                setattr(venue, attr, (data[key] or "").strip() or None)
        if "capacity" in data:
            try:
                capacity = int(data["capacity"] or 0)
            except (TypeError, ValueError):
                self.db.rollback()
                return False, "Capacity must be a whole number", None
            if capacity < 0:
                self.db.rollback()
                return False, "Capacity cannot be negative", None
            venue.capacity = capacity
        self.db.commit()
        return True, "Venue saved", venue

    def delete_venue(self, access: PromoterAccess, venue_id: int) -> Tuple[bool, str, None]:
        venue = self.db.get(Venue, venue_id)
        if venue is None or not access.can_access(venue.promoterID):
            return False, "Venue not found", None
        if venue.events:
            return False, "Venue still has events", None
        self.db.delete(venue)
        self.db.commit()
        return True, "Venue deleted", None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(self, access: PromoterAccess) -> List[Event]:
        query = access.scope_query(self.db.query(Event), Event.promoterID)
        return query.order_by(Event.start_at).all()

    def list_public_events(self, promoter_id: int, now: Optional[datetime] = None) -> List[Event]:
        now = now or utcnow()
        events = (
            self.db.query(Event)
            .filter(Event.promoterID == promoter_id)
            .filter(Event.status == EventStatus.PUBLISHED)
            .order_by(Event.start_at)
            .all()
        )
        return [event for event in events if event.is_upcoming(now)]

    def get_event(self, event_id: int, access: Optional[PromoterAccess] = None) -> Optional[Event]:
        event = self.db.get(Event, event_id)
        if event is None or (access is not None and not access.can_access(event.promoterID)):
            return None
        return event

    def save_event(self, access: PromoterAccess, data: Dict[str, Any], event_id: Optional[int] = None) -> Tuple[bool, str, Optional[Event]]:
        if event_id is not None:
            event = self.get_event(event_id, access)
            if event is None:
                return False, "Event not found", None
        else:
            if not (data.get("name") or "").strip():
                return False, "Event name is required", None
            if not data.get("startAt"):
                return False, "Event start date is required", None
            event = Event(promoterID=access.owning_promoter(data.get("promoterId")), status=EventStatus.DRAFT)

        try:
            if "name" in data:
                event.name = data["name"].strip()
            for key, attr in (("description", "description"), ("category", "category"), ("image", "image_url")):
                if key in data:
                    setattr(event, attr, data[key])
            if "startAt" in data:
                event.start_at = _parse_datetime(data["startAt"])
            if "doorTime" in data:
                event.door_time = _validate_door_time(data["doorTime"])
            if "status" in data:
                event.status = EventStatus(data["status"])
            if "capacity" in data:
                event.total_capacity = int(data["capacity"]) if data["capacity"] not in (None, "") else None
            if "price" in data:
                price = float(data["price"] or 0)
                if price < 0:
                    raise ValueError("Ticket price cannot be negative")
                event.ticket_price = price
            if "venueId" in data:
                venue_id = data["venueId"]
                if venue_id is not None and self.db.get(Venue, venue_id) is None:
                    raise ValueError("Venue not found")
                event.venueID = venue_id
        except (TypeError, ValueError) as exc:
            self.db.rollback()
            return False, str(exc), None

        if event_id is None:
            self.db.add(event)
        self.db.commit()
        self.logger.info("Event saved", extra={"event_id": event.eventID, "promoter": event.promoterID})
        return True, "Event saved", event

    def delete_event(self, access: PromoterAccess, event_id: int) -> Tuple[bool, str, None]:
        event = self.get_event(event_id, access)
        if event is None:
            return False, "Event not found", None
        has_orders = self.db.query(OrderItem.orderItemID).filter(OrderItem.eventID == event_id).first()
        if has_orders:
            return False, "Event has orders; cancel it instead", None
        self.db.delete(event)
        self.db.commit()
        return True, "Event deleted", None

    def get_availability(self, event: Event, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        sold = (
            self.db.query(func.coalesce(func.sum(OrderItem.quantity), 0))
            .join(Order, Order.orderID == OrderItem.orderID)
            .filter(OrderItem.eventID == event.eventID)
            .filter(Order.status.in_(SOLD_STATUSES))
            .scalar()
        )
        holds = (
            self.db.query(SeatHold)
            .filter(SeatHold.eventID == event.eventID)
            .filter(SeatHold.status == HoldStatus.ACTIVE)
            .all()
        )
        held = sum(hold.quantity for hold in holds if hold.is_active(now))
        capacity = event.capacity
        sold = int(sold or 0)
        return {
            "capacity": capacity,
            "sold": sold,
            "held": held,
            "available": max(0, capacity - sold - held),
        }

    # ------------------------------------------------------------------
    # Orders & customers
    # ------------------------------------------------------------------

    def list_orders(self, access: PromoterAccess, filters: Optional[Dict[str, Any]] = None) -> List[Order]:
        filters = filters or {}
        query = access.scope_query(self.db.query(Order), Order.promoterID)

        search = (filters.get("search") or "").strip()
        if search:
            pattern = f"%{search.lower()}%"
            query = query.filter(
                or_(
                    func.lower(Order.order_number).like(pattern),
                    func.lower(Order.customer_email).like(pattern),
                    func.lower(Order.customer_name).like(pattern),
                )
            )
        if filters.get("status"):
            query = query.filter(Order.status == OrderStatus(filters["status"]))
        if filters.get("eventId"):
            query = query.filter(Order.eventID == int(filters["eventId"]))
        start = _parse_datetime(filters.get("startDate"))
        if start is not None:
            query = query.filter(Order.created_at >= start)
        end = _parse_datetime(filters.get("endDate"))
        if end is not None:
            # A bare date includes the whole day.
            if len(str(filters["endDate"])) <= 10:
                end += timedelta(days=1)
            query = query.filter(Order.created_at < end)
        return query.order_by(Order.created_at.desc()).all()

    def get_order_stats(self, orders: List[Order]) -> Dict[str, float]:
        paid = [order for order in orders if OrderStatus(order.status) in SOLD_STATUSES]
        revenue = sum(float(order.total or 0) - float(order.refunded_amount or 0) for order in paid)
        tickets = sum(order.ticket_count for order in paid)
        return {
            "totalOrders": len(orders),
            "totalRevenue": round(revenue, 2),
            "totalTickets": tickets,
            "avgOrderValue": round(revenue / len(paid), 2) if paid else 0.0,
        }

    def get_customers(self, access: PromoterAccess) -> List[Dict[str, Any]]:
        orders = access.scope_query(self.db.query(Order), Order.promoterID).all()
        customers: Dict[str, Dict[str, Any]] = {}
        for order in orders:
            email = (order.customer_email or "").strip().lower()
            if not email:
                continue
            entry = customers.setdefault(
                email,
                {
                    "email": email,
                    "name": order.customer_name,
                    "phone": order.customer_phone,
                    "orders": 0,
                    "totalSpent": 0.0,
                    "tickets": 0,
                    "firstOrder": None,
                    "lastOrder": None,
                },
            )
            entry["orders"] += 1
            if OrderStatus(order.status) in SOLD_STATUSES:
                entry["totalSpent"] = round(entry["totalSpent"] + float(order.total or 0) - float(order.refunded_amount or 0), 2)
                entry["tickets"] += order.ticket_count
            entry["name"] = entry["name"] or order.customer_name
            created = ensure_utc(order.created_at)
            if created is not None:
                if entry["firstOrder"] is None or created < entry["firstOrder"]:
                    entry["firstOrder"] = created
                if entry["lastOrder"] is None or created > entry["lastOrder"]:
                    entry["lastOrder"] = created

        result = sorted(customers.values(), key=lambda item: item["totalSpent"], reverse=True)
        for entry in result:
            entry["firstOrder"] = entry["firstOrder"].isoformat() if entry["firstOrder"] else None
            entry["lastOrder"] = entry["lastOrder"].isoformat() if entry["lastOrder"] else None
        return result

    def get_dashboard_stats(self, access: PromoterAccess, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        events = self.list_events(access)
        orders = access.scope_query(self.db.query(Order), Order.promoterID).order_by(Order.created_at.desc()).all()
        order_stats = self.get_order_stats(orders)
        emails = {(order.customer_email or "").lower() for order in orders if order.customer_email}
        return {
            "totalEvents": len(events),
            "upcomingEvents": sum(1 for event in events if event.is_upcoming(now)),
            "totalOrders": order_stats["totalOrders"],
            "totalRevenue": order_stats["totalRevenue"],
            "totalTickets": order_stats["totalTickets"],
            "totalCustomers": len(emails),
            "recentOrders": [serialize_order(order) for order in orders[:5]],
        }
