"""
Segmentation Engine

Classifies a reconciled customer into named segments from its order
aggregate and the configured thresholds. Segments overlap, are computed
on every read, and are never stored.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional

SEGMENTS = ("vip", "active", "dormant", "new", "marketable")

SEGMENT_DEFINITIONS = {
    "vip": "Order count or lifetime spend at or above the VIP thresholds",
    "active": "Enough orders, most recent one inside the active window",
    "dormant": "Has ordered, but not inside the dormant window",
    "new": "Exactly one order, placed inside the new-customer window",
    "marketable": "Has an email address",
}

DAYS_PER_MONTH = 30


@dataclass
class SegmentSettings:
    """Segment thresholds (defaults apply when nothing is stored)"""
    vip_min_orders: int = 5
    vip_min_spend: Decimal = Decimal("5000")
    dormant_months: int = 12
    active_min_orders: int = 2
    active_months: int = 6
    new_days: int = 30

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["vip_min_spend"] = float(self.vip_min_spend)
        return data


@dataclass
class OrderAggregate:
    """Per-customer order totals, derived from cached order rows"""
    count: int = 0
    total_spent: Decimal = Decimal("0")
    last_order_date: Optional[datetime] = None
    last_order_product: Optional[str] = None


def _months(months: int) -> timedelta:
    return timedelta(days=months * DAYS_PER_MONTH)


def classify(
    customer: Any,
    aggregate: OrderAggregate,
    settings: SegmentSettings,
    now: Optional[datetime] = None
) -> List[str]:
    """
    Segments a customer qualifies for, in SEGMENTS order

    Args:
        customer: Anything with an `email` attribute (marketable when non-blank)
        aggregate: Order count, spend and most recent order date
        settings: Thresholds
        now: Reference time (defaults to utcnow)
    """
    now = now or datetime.utcnow()
    count = aggregate.count or 0
    spent = Decimal(str(aggregate.total_spent or 0))
    last = aggregate.last_order_date
    segments = []

    if count >= settings.vip_min_orders or spent >= Decimal(str(settings.vip_min_spend)):
        segments.append("vip")

    if count >= settings.active_min_orders and last is not None and last >= now - _months(settings.active_months):
        segments.append("active")

    if count > 0 and last is not None and last < now - _months(settings.dormant_months):
        segments.append("dormant")

    if count == 1 and last is not None and last >= now - timedelta(days=settings.new_days):
        segments.append("new")

    email = getattr(customer, "email", None)
    if email and email.strip():
        segments.append("marketable")

    return segments


def aggregate_orders(
    rows: Iterable[Any],
    key_fn: Callable[[Any], Optional[Hashable]]
) -> Dict[Hashable, OrderAggregate]:
    """
    Fold order rows into one OrderAggregate per customer key

    Rows need `total`, `order_date` and optionally `line_items`; rows whose
    key_fn returns None are skipped.
    """
    aggregates: Dict[Hashable, OrderAggregate] = {}
    for row in rows:
        key = key_fn(row)
        if key is None:
            continue
        agg = aggregates.setdefault(key, OrderAggregate())
        agg.count += 1
        agg.total_spent += Decimal(str(row.total or 0))
        order_date = row.order_date
        if order_date is not None and (agg.last_order_date is None or order_date > agg.last_order_date):
            agg.last_order_date = order_date
            agg.last_order_product = _primary_item_name(row)
    return aggregates


def _primary_item_name(row: Any) -> Optional[str]:
    items = getattr(row, "line_items", None) or []
    if items and isinstance(items[0], dict):
        return items[0].get("name")
    return None
