"""
In-memory notification inbox.

Order confirmations, dashboard alerts and new data subject requests are
published here and surfaced to buyers and promoter staff in the back-office.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from boxoffice.models import User, UserRole
from boxoffice.observability import increment_counter, record_event


@dataclass
class Notification:
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """Process-wide singleton holding the most recent notifications per user."""

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._ids = count(1)
        self._max_notifications_per_user: int = 50
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=f"notif_{next(self._ids)}_{int(datetime.now(timezone.utc).timestamp())}",
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
            )
            inbox = self._notifications[user_id]
            inbox.insert(0, notification)
            del inbox[self._max_notifications_per_user:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info("Notification created for user %s: %s", user_id, title)
        return notification

    def get_notifications(self, user_id: int, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        notifications = self._notifications.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        return sum(1 for n in self._notifications.get(user_id, []) if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        for notification in self._notifications.get(user_id, []):
            if notification.id == notification_id:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        now = datetime.now(timezone.utc)
        marked = 0
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                marked += 1
        return marked

    def clear_notifications(self, user_id: Optional[int] = None) -> None:
        """Drop one user's inbox, or every inbox when no user is given."""
        with self._lock:
            if user_id is None:
                self._notifications.clear()
            else:
                self._notifications[user_id] = []


def promoter_staff_ids(db: Session, promoter_id: Optional[int]) -> List[int]:
    """Users who should hear about activity on a promoter's account."""
    if promoter_id is None:
        return []
    rows = (
        db.query(User.userID)
        .filter(User.promoterID == promoter_id)
        .filter(User.role.in_([UserRole.PROMOTER.value, UserRole.ADMIN.value, UserRole.SUPERADMIN.value]))
        .all()
    )
    return [row[0] for row in rows]


def _fan_out(user_ids: Iterable[int], **kwargs) -> int:
    service = NotificationService()
    delivered = 0
    for user_id in dict.fromkeys(user_ids):
        service.add_notification(user_id=user_id, **kwargs)
        delivered += 1
    return delivered


def publish_order_confirmed(db: Session, order) -> int:
    record_event(
        "order_confirmed",
        {
            "order_id": order.orderID,
            "order_number": order.order_number,
            "promoter_id": order.promoterID,
            "total": float(order.total or 0),
        },
    )
    recipients = promoter_staff_ids(db, order.promoterID)
    delivered = _fan_out(
        recipients,
        notification_type="order_confirmed",
        title=f"New order {order.order_number}",
        message=f"{order.customer_name or order.customer_email} bought {order.ticket_count} ticket(s) "
        f"for ${float(order.total or 0):.2f}.",
        reference_id=order.orderID,
        reference_type="order",
    )
    if order.userID:
        delivered += _fan_out(
            [order.userID],
            notification_type="order_confirmed",
            title=f"Order {order.order_number} confirmed",
            message="Your payment went through and your tickets are ready.",
            reference_id=order.orderID,
            reference_type="order",
        )
    return delivered


def publish_alert_triggered(db: Session, alert) -> int:
    record_event(
        "dashboard_alert_triggered",
        {"alert_id": alert.alertID, "promoter_id": alert.promoterID, "metric": alert.metric},
    )
    return _fan_out(
        promoter_staff_ids(db, alert.promoterID),
        notification_type="dashboard_alert",
        title=f"Alert: {alert.rule_name}",
        message=alert.message,
        reference_id=alert.alertID,
        reference_type="dashboard_alert",
    )


def publish_dsr_created(db: Session, dsr) -> int:
    record_event(
        "dsr_created",
        {"dsr_id": dsr.dsrID, "promoter_id": dsr.promoterID, "type": dsr.request_type.value},
    )
    return _fan_out(
        promoter_staff_ids(db, dsr.promoterID),
        notification_type="dsr_created",
        title="New data subject request",
        message=f"{dsr.requester_email} filed a {dsr.request_type.value.replace('_', ' ')} request.",
        reference_id=dsr.dsrID,
        reference_type="data_subject_request",
    )
