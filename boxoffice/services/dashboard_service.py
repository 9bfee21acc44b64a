"""Promoter dashboard: period KPIs, alert rules and goal tracking."""
from __future__ import annotations

import calendar
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    AlertRule,
    AlertStatus,
    DashboardAlert,
    Event,
    EventStatus,
    GoalStatus,
    Order,
    OrderStatus,
    PromoterGoal,
)
from boxoffice.observability import increment_counter
from boxoffice.observability.business_metrics import (
    compute_order_series,
    compute_refund_series,
    generate_quarter_windows,
    select_quarter_window,
)
from boxoffice.services.notification_service import publish_alert_triggered

PERIOD_TYPES = ("daily", "weekly", "monthly", "quarterly", "yearly", "custom")
ALERT_OPERATORS = ("greater_than", "less_than", "equals")
ALERT_SEVERITIES = ("info", "warning", "critical")
PAID_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED)


def _months_before(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_range(period: str, now: Optional[datetime] = None, start: Optional[datetime] = None,
                 end: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utcnow()
    if period == "custom":
        if start is None or end is None:
            raise ValueError("A custom period needs a start and an end")
        return ensure_utc(start), ensure_utc(end)
    if period == "daily":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), now
    if period == "weekly":
        return now - timedelta(days=7), now
    if period == "monthly":
        return _months_before(now, 1), now
    if period == "quarterly":
        return _months_before(now, 3), now
    if period == "yearly":
        return _months_before(now, 12), now
    raise ValueError(f"Unknown period: {period}")


def previous_period(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    duration = end - start
    return start - duration, end - duration


def resolve_metric(kpis: Dict[str, Any], path: str) -> Optional[float]:
    """Look up a dotted path such as ``revenue.total``."""
    value: Any = kpis
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _trend(current: float, previous: float) -> float:
    return round((current - previous) / previous * 100, 2) if previous > 0 else 0.0


def goal_status(progress: float, expected: float) -> GoalStatus:
    if progress >= 100:
        return GoalStatus.COMPLETED
    if progress >= expected * 0.9:
        return GoalStatus.ON_TRACK
    if progress >= expected * 0.7:
        return GoalStatus.AT_RISK
    return GoalStatus.BEHIND


class DashboardService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # KPIs
    # ------------------------------------------------------------------

    def _orders_between(self, promoter_id: int, start: datetime, end: datetime) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.promoterID == promoter_id)
            .filter(Order.created_at >= start)
            .filter(Order.created_at <= end)
            .all()
        )

    @staticmethod
    def _paid(orders: List[Order]) -> List[Order]:
        return [order for order in orders if OrderStatus(order.status) in PAID_STATUSES]

    def _revenue_kpis(self, orders: List[Order], previous: List[Order]) -> Dict[str, Any]:
        paid = self._paid(orders)
        ticket_sales = sum(float(o.subtotal or 0) - float(o.discount or 0) for o in paid)
        fees = sum(float(o.service_fee or 0) for o in paid)
        refunds = sum(float(o.refunded_amount or 0) for o in orders)
        total = ticket_sales + fees
        previous_total = sum(float(o.total or 0) for o in self._paid(previous))

        by_event: Dict[int, Dict[str, Any]] = {}
        by_channel: Dict[str, float] = defaultdict(float)
        for order in paid:
            entry = by_event.setdefault(
                order.eventID,
                {"eventId": order.eventID, "eventName": order.event.name if order.event else "Unknown", "amount": 0.0},
            )
            entry["amount"] = round(entry["amount"] + float(order.total or 0), 2)
            by_channel[order.source or "direct"] += float(order.total or 0)

        return {
            "total": round(total, 2),
            "ticketSales": round(ticket_sales, 2),
            "fees": round(fees, 2),
            "refunds": round(refunds, 2),
            "net": round(total - refunds, 2),
            "trend": _trend(total, previous_total),
            "byEvent": sorted(by_event.values(), key=lambda item: item["amount"], reverse=True)[:10],
            "byChannel": [
                {"channel": channel, "amount": round(amount, 2)}
                for channel, amount in sorted(by_channel.items(), key=lambda item: item[1], reverse=True)
            ],
        }

    def _sales_kpis(self, orders: List[Order], previous: List[Order]) -> Dict[str, Any]:
        paid = self._paid(orders)
        revenue = sum(float(o.total or 0) for o in paid)
        return {
            "totalTickets": sum(order.ticket_count for order in paid),
            "totalOrders": len(paid),
            "averageOrderValue": round(revenue / len(paid), 2) if paid else 0.0,
            "trend": _trend(len(paid), len(self._paid(previous))),
        }

    def _customer_kpis(self, promoter_id: int, orders: List[Order], start: datetime) -> Dict[str, Any]:
        emails = {(o.customer_email or "").lower() for o in self._paid(orders) if o.customer_email}
        history = (
            self.db.query(Order)
            .filter(Order.promoterID == promoter_id)
            .filter(Order.status.in_(PAID_STATUSES))
            .all()
        )
        first_seen: Dict[str, datetime] = {}
        lifetime: Dict[str, float] = defaultdict(float)
        for order in history:
            email = (order.customer_email or "").lower()
            if email not in emails:
                continue
            created = ensure_utc(order.created_at)
            if email not in first_seen or created < first_seen[email]:
                first_seen[email] = created
            lifetime[email] += float(order.total or 0) - float(order.refunded_amount or 0)

        new = sum(1 for email in emails if first_seen.get(email) and first_seen[email] >= start)
        returning = len(emails) - new
        return {
            "total": len(emails),
            "new": new,
            "returning": returning,
            "returningRate": round(returning / len(emails) * 100, 2) if emails else 0.0,
            "averageLifetimeValue": round(sum(lifetime.values()) / len(lifetime), 2) if lifetime else 0.0,
        }

    def _event_kpis(self, promoter_id: int, orders: List[Order], now: datetime) -> Dict[str, Any]:
        events = self.db.query(Event).filter(Event.promoterID == promoter_id).all()
        paid = self._paid(orders)
        performance = []
        for event in events:
            event_orders = [o for o in paid if o.eventID == event.eventID]
            attendance = sum(o.ticket_count for o in event_orders)
            capacity = event.capacity
            performance.append(
                {
                    "eventId": event.eventID,
                    "eventName": event.name,
                    "revenue": round(sum(float(o.total or 0) for o in event_orders), 2),
                    "attendance": attendance,
                    "capacityUtilization": round(attendance / capacity * 100, 2) if capacity else 0.0,
                }
            )
        return {
            "active": sum(1 for e in events if e.status == EventStatus.PUBLISHED and e.is_upcoming(now)),
            "upcoming": sum(1 for e in events if e.is_upcoming(now)),
            "averageCapacityUtilization": (
                round(sum(p["capacityUtilization"] for p in performance) / len(performance), 2) if performance else 0.0
            ),
            "bestPerforming": sorted(performance, key=lambda item: item["revenue"], reverse=True)[:5],
        }

    def calculate_kpis(self, promoter_id: int, period: str = "monthly", start: Optional[datetime] = None,
                       end: Optional[datetime] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        start, end = period_range(period, now, start, end)
        prev_start, prev_end = previous_period(start, end)
        orders = self._orders_between(promoter_id, start, end)
        previous = self._orders_between(promoter_id, prev_start, prev_end)
        return {
            "promoterId": promoter_id,
            "period": {"type": period, "start": start.isoformat(), "end": end.isoformat()},
            "revenue": self._revenue_kpis(orders, previous),
            "sales": self._sales_kpis(orders, previous),
            "customers": self._customer_kpis(promoter_id, orders, start),
            "events": self._event_kpis(promoter_id, orders, now),
        }

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def list_alert_rules(self, promoter_id: int) -> List[AlertRule]:
        return self.db.query(AlertRule).filter(AlertRule.promoterID == promoter_id).order_by(AlertRule.alertRuleID).all()

    def create_alert_rule(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[AlertRule]]:
        condition = data.get("condition") or {}
        operator = condition.get("operator") or data.get("operator")
        threshold = condition.get("threshold", data.get("threshold"))
        if not (data.get("name") or "").strip() or not data.get("metric"):
            return False, "Rule name and metric are required", None
        if operator not in ALERT_OPERATORS:
            return False, f"Unsupported operator: {operator}", None
        severity = data.get("severity") or "warning"
        if severity not in ALERT_SEVERITIES:
            return False, f"Unsupported severity: {severity}", None
        try:
            threshold = float(threshold)
        except (TypeError, ValueError):
            return False, "Threshold must be a number", None
        rule = AlertRule(
            promoterID=promoter_id,
            name=data["name"].strip(),
            metric=data["metric"],
            operator=operator,
            threshold=threshold,
            severity=severity,
            enabled=bool(data.get("enabled", True)),
        )
        self.db.add(rule)
        self.db.commit()
        return True, "Alert rule created", rule

    def set_rule_enabled(self, rule_id: int, enabled: bool) -> Tuple[bool, str, Optional[AlertRule]]:
        rule = self.db.get(AlertRule, rule_id)
        if rule is None:
            return False, "Alert rule not found", None
        rule.enabled = enabled
        self.db.commit()
        return True, "Alert rule updated", rule

    def delete_alert_rule(self, rule_id: int) -> Tuple[bool, str, None]:
        rule = self.db.get(AlertRule, rule_id)
        if rule is None:
            return False, "Alert rule not found", None
        self.db.delete(rule)
        self.db.commit()
        return True, "Alert rule deleted", None

    @staticmethod
    def _triggers(operator: str, value: float, threshold: float) -> bool:
        if operator == "greater_than":
            return value > threshold
        if operator == "less_than":
            return value < threshold
        if operator == "equals":
            return value == threshold
        return False

    def check_alerts(self, promoter_id: int, kpis: Optional[Dict[str, Any]] = None) -> List[DashboardAlert]:
        kpis = kpis or self.calculate_kpis(promoter_id)
        triggered = []
        now = utcnow()
        for rule in self.list_alert_rules(promoter_id):
            if not rule.enabled:
                continue
            value = resolve_metric(kpis, rule.metric)
            threshold = float(rule.threshold)
            if value is None or not self._triggers(rule.operator, value, threshold):
                continue
            shown = int(value) if value.is_integer() else value
            shown_threshold = int(threshold) if threshold.is_integer() else threshold
            alert = DashboardAlert(
                promoterID=promoter_id,
                alertRuleID=rule.alertRuleID,
                rule_name=rule.name,
                metric=rule.metric,
                value=value,
                threshold=threshold,
                message=f"{rule.name}: {rule.metric} is {shown} (threshold: {shown_threshold})",
                severity=rule.severity,
                status=AlertStatus.ACTIVE,
                created_at=now,
            )
            self.db.add(alert)
            rule.trigger_count = (rule.trigger_count or 0) + 1
            rule.last_triggered_at = now
            triggered.append(alert)
        self.db.commit()
        for alert in triggered:
            increment_counter("dashboard_alerts_triggered_total", labels={"severity": alert.severity})
            publish_alert_triggered(self.db, alert)
        return triggered

    def list_alerts(self, promoter_id: int, statuses: Optional[List[str]] = None) -> List[DashboardAlert]:
        query = self.db.query(DashboardAlert).filter(DashboardAlert.promoterID == promoter_id)
        if statuses:
            query = query.filter(DashboardAlert.status.in_([AlertStatus(s) for s in statuses]))
        return query.order_by(DashboardAlert.created_at.desc(), DashboardAlert.alertID.desc()).all()

    def acknowledge_alert(self, alert_id: int, user_id: Optional[int]) -> Tuple[bool, str, Optional[DashboardAlert]]:
        alert = self.db.get(DashboardAlert, alert_id)
        if alert is None:
            return False, "Alert not found", None
        if alert.status != AlertStatus.ACTIVE:
            return False, f"Alert is already {alert.status.value}", alert
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_by = user_id
        alert.acknowledged_at = utcnow()
        self.db.commit()
        return True, "Alert acknowledged", alert

    def resolve_alert(self, alert_id: int) -> Tuple[bool, str, Optional[DashboardAlert]]:
        alert = self.db.get(DashboardAlert, alert_id)
        if alert is None:
            return False, "Alert not found", None
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = utcnow()
        self.db.commit()
        return True, "Alert resolved", alert

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def list_goals(self, promoter_id: int) -> List[PromoterGoal]:
        return (
            self.db.query(PromoterGoal)
            .filter(PromoterGoal.promoterID == promoter_id)
            .order_by(PromoterGoal.created_at.desc(), PromoterGoal.goalID.desc())
            .all()
        )

    def create_goal(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[PromoterGoal]]:
        period = data.get("period") or {}
        try:
            target = float(data.get("target"))
            start = ensure_utc(datetime.fromisoformat(str(period.get("start")).replace("Z", "+00:00")))
            end = ensure_utc(datetime.fromisoformat(str(period.get("end")).replace("Z", "+00:00")))
        except (TypeError, ValueError):
            return False, "Goal needs a numeric target and an ISO period start and end", None
        if not (data.get("name") or "").strip() or not data.get("metric"):
            return False, "Goal name and metric are required", None
        if target <= 0:
            return False, "Target must be positive", None
        if end <= start:
            return False, "Goal period must end after it starts", None
        milestones = [
            {"percentage": float(m.get("percentage")), "label": m.get("label"), "reached": False, "reachedAt": None}
            for m in data.get("milestones") or []
        ]
        goal = PromoterGoal(
            promoterID=promoter_id,
            name=data["name"].strip(),
            goal_type=data.get("type") or "custom",
            metric=data["metric"],
            target=target,
            current=0,
            unit=data.get("unit"),
            period_start=start,
            period_end=end,
            milestones=milestones,
            status=GoalStatus.ON_TRACK,
        )
        self.db.add(goal)
        self.db.commit()
        return True, "Goal created", goal

    def update_goal_progress(self, goal_id: int, current_value: float, now: Optional[datetime] = None) -> Optional[PromoterGoal]:
        goal = self.db.get(PromoterGoal, goal_id)
        if goal is None:
            return None
        now = now or utcnow()
        progress = float(current_value) / float(goal.target) * 100
        start, end = ensure_utc(goal.period_start), ensure_utc(goal.period_end)
        total = (end - start).total_seconds()
        elapsed = (now - start).total_seconds()
        expected = min(100.0, max(0.0, elapsed / total * 100)) if total > 0 else 100.0

        milestones = []
        for milestone in goal.milestones or []:
            reached = progress >= float(milestone.get("percentage", 0))
            updated = dict(milestone, reached=reached)
            if reached and not milestone.get("reached"):
                updated["reachedAt"] = now.isoformat()
            elif not reached:
                updated["reachedAt"] = None
            milestones.append(updated)

        goal.current = current_value
        goal.status = goal_status(progress, expected)
        goal.milestones = milestones
        self.db.commit()
        return goal

    def refresh_goals(self, promoter_id: int, kpis: Dict[str, Any], now: Optional[datetime] = None) -> List[PromoterGoal]:
        updated = []
        for goal in self.list_goals(promoter_id):
            value = resolve_metric(kpis, goal.metric)
            if value is not None and GoalStatus(goal.status) != GoalStatus.COMPLETED:
                updated.append(self.update_goal_progress(goal.goalID, value, now))
        return updated

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_summary(self, promoter_id: int, period: str = "monthly", quarter: Optional[str] = None,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        kpis = self.calculate_kpis(promoter_id, period, now=now)
        self.refresh_goals(promoter_id, kpis, now)
        window = select_quarter_window(generate_quarter_windows(), quarter, now)
        active_alerts = self.list_alerts(promoter_id, [AlertStatus.ACTIVE.value])
        return {
            "kpis": kpis,
            "activeAlerts": len(active_alerts),
            "alerts": [alert.to_dict() for alert in active_alerts[:10]],
            "goals": [goal.to_dict() for goal in self.list_goals(promoter_id)],
            "quarter": {
                "key": window.key,
                "label": window.label,
                "orders": compute_order_series(self.db, window, promoter_id),
                "refunds": compute_refund_series(self.db, window, promoter_id),
            },
        }
