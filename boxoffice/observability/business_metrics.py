"""
Daily sales and refund series over calendar quarters.

The dashboard summary charts one quarter at a time; each day carries the
number of paid orders (or completed refunds) and the money they moved, bucketed
on the promoter-facing timezone from ``Config.DEFAULT_TIMEZONE``.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import ensure_utc
from boxoffice.models import Order, OrderStatus, Refund, RefundStatus

FIRST_SALES_YEAR = 2024
LAST_SALES_YEAR = 2040
try:
    _LOCAL_TZ = ZoneInfo(Config.DEFAULT_TIMEZONE)
except ZoneInfoNotFoundError:
    _LOCAL_TZ = timezone.utc

_PAID_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED)


@dataclass(frozen=True)
class QuarterWindow:
    key: str
    label: str
    year: int
    quarter: int
    start: datetime
    end: datetime

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment < self.end


def _quarter_bounds(year: int, quarter: int) -> Tuple[datetime, datetime]:
    first_month = 3 * quarter - 2
    start = datetime(year, first_month, 1, tzinfo=timezone.utc)
    end = datetime(year + quarter // 4, (first_month + 3 - 1) % 12 + 1, 1, tzinfo=timezone.utc)
    return start, end


def generate_quarter_windows() -> List[QuarterWindow]:
    windows = []
    for year in range(FIRST_SALES_YEAR, LAST_SALES_YEAR + 1):
        for quarter in (1, 2, 3, 4):
            start, end = _quarter_bounds(year, quarter)
            windows.append(QuarterWindow(f"{year}-Q{quarter}", f"Q{quarter} {year}", year, quarter, start, end))
    return windows


def select_quarter_window(
    windows: List[QuarterWindow],
    selected_key: Optional[str],
    now: Optional[datetime] = None,
) -> QuarterWindow:
    """The requested quarter, else the one containing ``now``, else the last one."""
    by_key = {window.key: window for window in windows}
    if selected_key in by_key:
        return by_key[selected_key]
    now = now or datetime.now(timezone.utc)
    return next((window for window in windows if window.contains(now)), windows[-1])


def compute_order_series(
    session: Session,
    window: QuarterWindow,
    promoter_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Paid orders per day, keyed on when they were paid, with gross totals."""
    stmt = select(Order.paid_at, Order.created_at, Order.total).where(Order.status.in_(_PAID_STATUSES))
    if promoter_id is not None:
        stmt = stmt.where(Order.promoterID == promoter_id)
    rows = ((paid_at or created_at, total) for paid_at, created_at, total in session.execute(stmt))
    return _daily_series(rows, window)


def compute_refund_series(
    session: Session,
    window: QuarterWindow,
    promoter_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Completed refunds per day, keyed on processed_at when it is set."""
    stmt = (
        select(Refund.processed_at, Refund.created_at, Refund.amount)
        .join(Order, Order.orderID == Refund.orderID)
        .where(Refund.status == RefundStatus.COMPLETED)
    )
    if promoter_id is not None:
        stmt = stmt.where(Order.promoterID == promoter_id)
    rows = ((processed_at or created_at, amount) for processed_at, created_at, amount in session.execute(stmt))
    return _daily_series(rows, window)


def _local_day(moment: datetime) -> date:
    return ensure_utc(moment).astimezone(_LOCAL_TZ).date()


def _daily_series(rows: Iterable[Tuple[Optional[datetime], Any]], window: QuarterWindow) -> Dict[str, Any]:
    counts: Dict[date, int] = defaultdict(int)
    amounts: Dict[date, float] = defaultdict(float)
    for moment, amount in rows:
        moment = ensure_utc(moment)
        if not window.contains(moment):
            continue
        day = _local_day(moment)
        counts[day] += 1
        amounts[day] += float(amount or 0)

    series = []
    day = window.start
    while day < window.end:
        key = _local_day(day)
        series.append({"date": key.isoformat(), "count": counts[key], "amount": round(amounts[key], 2)})
        day += timedelta(days=1)

    total = sum(point["count"] for point in series)
    return {
        "total": total,
        "amount": round(sum(point["amount"] for point in series), 2),
        "series": series,
        "series_max": max((point["count"] for point in series), default=0),
        "mean_per_day": total / len(series) if series else 0.0,
    }


__all__ = [
    "QuarterWindow",
    "generate_quarter_windows",
    "select_quarter_window",
    "compute_order_series",
    "compute_refund_series",
]
