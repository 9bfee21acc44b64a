"""RFM customer profiling, segments and marketing insights."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import Order
from boxoffice.services.access import PromoterAccess
from boxoffice.services.admin_service import SOLD_STATUSES

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass
class RFMScore:
    recency: int
    frequency: int
    monetary: int
    segment: str

    @property
    def score(self) -> int:
        return self.recency * 100 + self.frequency * 10 + self.monetary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recency": self.recency,
            "frequency": self.frequency,
            "monetary": self.monetary,
            "score": self.score,
            "segment": self.segment,
        }


@dataclass
class CustomerProfile:
    email: str
    name: str
    rfm: RFMScore
    total_orders: int
    total_spent: float
    first_purchase: datetime
    last_purchase: datetime
    average_order_value: float
    churn_probability: int
    lifetime_value: float
    engagement_score: int
    categories: List[str] = field(default_factory=list)
    venues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "name": self.name,
            "rfmScore": self.rfm.to_dict(),
            "totalOrders": self.total_orders,
            "totalSpent": self.total_spent,
            "firstPurchase": self.first_purchase.isoformat(),
            "lastPurchase": self.last_purchase.isoformat(),
            "averageOrderValue": self.average_order_value,
            "categories": self.categories,
            "venues": self.venues,
            "churnProbability": self.churn_probability,
            "lifetimeValue": self.lifetime_value,
            "engagementScore": self.engagement_score,
        }


def cut_points(values: List[float]) -> List[float]:
    ordered = sorted(values)
    if not ordered:
        return [0, 0, 0, 0, 0]
    n = len(ordered)
    return [0] + [ordered[int(n * fraction)] for fraction in (0.2, 0.4, 0.6, 0.8)]


def quintile_score(value: float, cuts: List[float], inverse: bool = False) -> int:
    if inverse:
        for score, cut in zip((5, 4, 3, 2), cuts[1:]):
            if value <= cut:
                return score
        return 1
    for score, cut in zip((5, 4, 3, 2), reversed(cuts[1:])):
        if value >= cut:
            return score
    return 1


def rfm_segment_name(r: int, f: int, m: int) -> str:
    if r >= 4 and f >= 4 and m >= 4:
        return "Champions"
    if f >= 4 and m >= 3:
        return "Loyal Customers"
    if r >= 4 and f >= 2:
        return "Potential Loyalist"
    if r >= 4 and f <= 2:
        return "New Customer"
    if r <= 2 and f >= 3:
        return "At Risk"
    if r <= 2 and f <= 2 and m >= 3:
        return "Hibernating"
    if r <= 2 and f <= 2:
        return "Lost"
    if m >= 5:
        return "Big Spender"
    return "Regular"


def _segment_rules(now: datetime) -> List[tuple]:
    thirty_days_ago = now - timedelta(days=30)
    ninety_days_ago = now - timedelta(days=90)
    rules: List[tuple[str, str, str, Callable[[CustomerProfile], bool]]] = [
        ("champions", "Champions", "Best customers - recent, frequent, high spenders",
         lambda c: c.rfm.recency >= 4 and c.rfm.frequency >= 4 and c.rfm.monetary >= 4),
        ("loyal", "Loyal Customers", "Frequent buyers with good spending habits",
         lambda c: c.rfm.frequency >= 4 and c.rfm.monetary >= 3 and c.rfm.recency >= 3),
        ("potential-loyalists", "Potential Loyalists", "Recent customers with growth potential",
         lambda c: c.rfm.recency >= 4 and 2 <= c.rfm.frequency <= 3),
        ("new-customers", "New Customers", "Recently acquired customers",
         lambda c: c.first_purchase >= thirty_days_ago and c.total_orders <= 2),
        ("at-risk", "At Risk", "Previously valuable customers showing signs of churning",
         lambda c: c.rfm.recency <= 2 and c.rfm.frequency >= 3 and c.rfm.monetary >= 3),
        ("hibernating", "Hibernating", "Low activity customers who may be lost",
         lambda c: c.rfm.recency <= 2 and c.rfm.frequency <= 2),
        ("lost", "Lost Customers", "Previously active customers with no recent activity",
         lambda c: c.last_purchase < ninety_days_ago and c.rfm.frequency >= 2),
        ("high-value", "High Value", "Customers with highest spending",
         lambda c: c.rfm.monetary >= 5),
        ("bargain-hunters", "Bargain Hunters", "Frequent buyers with lower average order value",
         lambda c: c.rfm.frequency >= 3 and c.average_order_value < 50),
    ]
    return rules


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _top(counter: Counter, limit: int = 3) -> List[str]:
    return [name for name, _count in counter.most_common(limit)]


def build_segment(segment_id: str, name: str, description: str, customers: List[CustomerProfile]) -> Dict[str, Any]:
    categories: Counter = Counter()
    venues: Counter = Counter()
    for customer in customers:
        categories.update(customer.categories)
        venues.update(customer.venues)
    churn = _mean([c.churn_probability for c in customers])
    return {
        "id": segment_id,
        "name": name,
        "description": description,
        "customerCount": len(customers),
        "totalRevenue": round(sum(c.total_spent for c in customers), 2),
        "averageOrderValue": round(_mean([c.average_order_value for c in customers]), 2),
        "characteristics": {
            "averageRecency": round(_mean([c.rfm.recency for c in customers]), 1),
            "averageFrequency": round(_mean([c.rfm.frequency for c in customers]), 1),
            "averageMonetaryValue": round(_mean([c.rfm.monetary for c in customers]), 1),
            "topCategories": _top(categories),
            "topVenues": _top(venues),
            "churnRisk": "high" if churn > 60 else "medium" if churn > 30 else "low",
        },
        "customers": [customer.to_dict() for customer in customers],
    }


class SegmentationService:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def build_profiles(self, access: PromoterAccess, now: Optional[datetime] = None) -> List[CustomerProfile]:
        now = now or utcnow()
        orders = (
            access.scope_query(self.db.query(Order), Order.promoterID)
            .filter(Order.status.in_(SOLD_STATUSES))
            .all()
        )

        grouped: Dict[str, Dict[str, Any]] = {}
        for order in orders:
            email = (order.customer_email or "").strip().lower()
            if not email:
                continue
            entry = grouped.setdefault(
                email,
                {"name": order.customer_name or "Unknown", "orders": [], "categories": set(), "venues": set()},
            )
            entry["orders"].append(order)
            event = order.event
            if event is not None:
                if event.category:
                    entry["categories"].add(event.category)
                if event.venue is not None:
                    entry["venues"].add(event.venue.name)

        metrics = {}
        for email, entry in grouped.items():
            dates = [ensure_utc(order.paid_at or order.created_at) for order in entry["orders"]]
            first, last = min(dates), max(dates)
            spent = sum(float(order.total or 0) for order in entry["orders"])
            metrics[email] = (first, last, int((now - last).total_seconds() // SECONDS_PER_DAY), len(dates), spent)

        recency_cuts = cut_points([m[2] for m in metrics.values()])
        frequency_cuts = cut_points([m[3] for m in metrics.values()])
        monetary_cuts = cut_points([m[4] for m in metrics.values()])

        profiles = []
        for email, (first, last, recency_days, frequency, spent) in metrics.items():
            r = quintile_score(recency_days, recency_cuts, inverse=True)
            f = quintile_score(frequency, frequency_cuts)
            m = quintile_score(spent, monetary_cuts)

            average_gap = (last - first).total_seconds() / SECONDS_PER_DAY / (frequency - 1) if frequency > 1 else 30
            churn = min(100.0, max(0.0, recency_days / average_gap * 20)) if average_gap > 0 else 100.0
            age_days = max(1.0, (now - first).total_seconds() / SECONDS_PER_DAY)
            lifetime_value = spent / age_days * 365 * 3

            profiles.append(
                CustomerProfile(
                    email=email,
                    name=grouped[email]["name"],
                    rfm=RFMScore(r, f, m, rfm_segment_name(r, f, m)),
                    total_orders=frequency,
                    total_spent=round(spent, 2),
                    first_purchase=first,
                    last_purchase=last,
                    average_order_value=round(spent / frequency, 2) if frequency else 0.0,
                    churn_probability=round(churn),
                    lifetime_value=round(lifetime_value, 2),
                    engagement_score=round(min(100, r * 10 + f * 15 + m * 5)),
                    categories=sorted(grouped[email]["categories"]),
                    venues=sorted(grouped[email]["venues"]),
                )
            )
        return profiles

    def get_segments(self, access: PromoterAccess, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        profiles = self.build_profiles(access, now)
        segments = []
        for segment_id, name, description, matches in _segment_rules(now):
            members = [profile for profile in profiles if matches(profile)]
            if members:
                segments.append(build_segment(segment_id, name, description, members))
        logger.debug("Built %s segments from %s profiles", len(segments), len(profiles))
        return segments

    def get_insights(self, access: PromoterAccess, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        insights = []
        for segment in self.get_segments(access, now):
            count = segment["customerCount"]
            revenue = segment["totalRevenue"]
            aov = segment["averageOrderValue"]
            base = {"segmentId": segment["id"], "segmentName": segment["name"]}
            if segment["id"] == "champions":
                insights.append({
                    **base,
                    "insight": f"{count} champion customers driving {round(revenue / 1000)}K in revenue",
                    "recommendation": "Offer exclusive early access and VIP experiences to maintain loyalty",
                    "priority": "high",
                    "potentialRevenue": round(revenue * 0.2, 2),
                })
            elif segment["id"] == "at-risk":
                insights.append({
                    **base,
                    "insight": f"{count} valuable customers at risk of churning",
                    "recommendation": "Launch win-back campaign with personalized offers",
                    "priority": "high",
                    "potentialRevenue": round(aov * count * 2, 2),
                })
            elif segment["id"] == "potential-loyalists":
                insights.append({
                    **base,
                    "insight": f"{count} customers showing signs of becoming loyal",
                    "recommendation": "Encourage with loyalty rewards and category-based recommendations",
                    "priority": "medium",
                    "potentialRevenue": round(aov * count * 3, 2),
                })
            elif segment["id"] == "new-customers":
                insights.append({
                    **base,
                    "insight": f"{count} new customers acquired recently",
                    "recommendation": "Send welcome series with event recommendations",
                    "priority": "medium",
                })
            elif segment["id"] == "hibernating":
                insights.append({
                    **base,
                    "insight": f"{count} customers have gone inactive",
                    "recommendation": "Send re-engagement email with special comeback offer",
                    "priority": "low",
                })
        return sorted(insights, key=lambda item: _PRIORITY_ORDER[item["priority"]])

    def get_customer_profile(self, access: PromoterAccess, email: str) -> Optional[CustomerProfile]:
        email = (email or "").strip().lower()
        return next((p for p in self.build_profiles(access) if p.email == email), None)

    def get_similar_customers(self, access: PromoterAccess, email: str, limit: int = 5) -> List[CustomerProfile]:
        profiles = self.build_profiles(access)
        email = (email or "").strip().lower()
        target = next((p for p in profiles if p.email == email), None)
        if target is None:
            return []

        def similarity(profile: CustomerProfile) -> float:
            score = max(0.0, 100 - abs(profile.rfm.score - target.rfm.score) / 5)
            score += len(set(profile.categories) & set(target.categories)) * 10
            if target.total_spent:
                score += max(0.0, 50 - abs(profile.total_spent - target.total_spent) / target.total_spent * 50)
            elif not profile.total_spent:
                score += 50
            return score

        others = [p for p in profiles if p.email != target.email]
        return sorted(others, key=similarity, reverse=True)[:limit]
