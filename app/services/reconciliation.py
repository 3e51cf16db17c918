"""
Identity Reconciliation Engine

Merges the independently cached ERP and storefront customers into one
logical customer per matching key (normalized email, else the last nine
digits of the phone, else the source-qualified id).

The ERP is authoritative for identity fields. A storefront record that
matches an ERP customer contributes its id, its own order totals and the
'storefront' source; one that matches nothing becomes a storefront-only
customer. Runs per request against the cache and is never stored.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from app.services.segmentation import OrderAggregate, SEGMENTS

ERP = "erp"
STOREFRONT = "storefront"

_NON_DIGITS = re.compile(r"\D")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercased, trimmed email; None when blank"""
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, last nine (drops country/trunk prefixes); None when no digits"""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    return digits[-9:] or None


def matching_key(email: Optional[str], phone: Optional[str], source: str, source_id: Any) -> str:
    return normalize_email(email) or normalize_phone(phone) or f"{source}-{source_id}"


@dataclass
class UnifiedCustomer:
    """One real-world customer across both sources"""
    key: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    status: str = "active"
    erp_id: Optional[str] = None
    storefront_id: Optional[int] = None
    erp_ids: List[str] = field(default_factory=list)
    storefront_ids: List[int] = field(default_factory=list)
    sources: Set[str] = field(default_factory=set)
    total_orders: int = 0
    total_spent: Decimal = Decimal("0.00")
    last_order_date: Optional[datetime] = None
    last_order_product: Optional[str] = None
    is_guest: bool = False
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    segments: List[str] = field(default_factory=list)

    @property
    def source_label(self) -> str:
        if self.sources == {ERP, STOREFRONT}:
            return "both"
        return next(iter(self.sources), "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "status": self.status,
            "erp_id": self.erp_id,
            "storefront_id": self.storefront_id,
            "sources": sorted(self.sources),
            "total_orders": self.total_orders,
            "total_spent": float(self.total_spent),
            "last_order_date": self.last_order_date.isoformat() if self.last_order_date else None,
            "last_order_product": self.last_order_product,
            "is_guest": self.is_guest,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "segments": list(self.segments),
        }


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _apply_last_order(customer: UnifiedCustomer, aggregate: Optional[OrderAggregate]) -> None:
    if aggregate is None or aggregate.last_order_date is None:
        return
    if customer.last_order_date is None or aggregate.last_order_date > customer.last_order_date:
        customer.last_order_date = aggregate.last_order_date
        customer.last_order_product = aggregate.last_order_product


def erp_to_unified(row: Any, aggregate: Optional[OrderAggregate] = None) -> UnifiedCustomer:
    aggregate = aggregate or OrderAggregate()
    phone = row.phone or row.mobile
    customer = UnifiedCustomer(
        key=matching_key(row.email, phone, ERP, row.erp_id),
        name=row.name,
        email=normalize_email(row.email),
        phone=phone,
        company=row.company or row.name,
        status="active" if (row.status or "").lower() == "active" else "inactive",
        erp_id=row.erp_id,
        erp_ids=[row.erp_id],
        sources={ERP},
        total_orders=aggregate.count,
        total_spent=Decimal(str(aggregate.total_spent)),
        last_updated=row.last_modified_at,
    )
    _apply_last_order(customer, aggregate)
    return customer


def storefront_to_unified(row: Any, aggregate: Optional[OrderAggregate] = None) -> UnifiedCustomer:
    name = (
        " ".join(p for p in (row.first_name, row.last_name) if p).strip()
        or row.company
        or row.email
    )
    orders, spent = storefront_totals(row, aggregate)
    customer = UnifiedCustomer(
        key=matching_key(row.email, row.phone, STOREFRONT, row.storefront_id),
        name=name,
        email=normalize_email(row.email),
        phone=row.phone,
        company=row.company,
        status="active",
        storefront_id=row.storefront_id,
        storefront_ids=[row.storefront_id],
        sources={STOREFRONT},
        total_orders=orders,
        total_spent=spent,
        is_guest=bool(row.is_guest),
        created_at=row.created_at_source,
        last_updated=row.last_modified_at,
    )
    _apply_last_order(customer, aggregate)
    return customer


def storefront_totals(row: Any, aggregate: Optional[OrderAggregate]) -> tuple:
    """
    Order count and spend the storefront reports for a customer

    The customer record's own counters win; cached orders fill in when the
    store did not report any.
    """
    if row.orders_count:
        return int(row.orders_count), Decimal(str(row.total_spent or 0))
    if aggregate is not None and aggregate.count:
        return aggregate.count, Decimal(str(aggregate.total_spent))
    return 0, Decimal(str(row.total_spent or 0))


def merge_customers(
    erp_rows: Iterable[Any],
    storefront_rows: Iterable[Any],
    erp_aggregates: Optional[Mapping[Any, OrderAggregate]] = None,
    storefront_aggregates: Optional[Mapping[Any, OrderAggregate]] = None
) -> List[UnifiedCustomer]:
    """
    Reconcile cached customers from both sources

    Args:
        erp_rows: ErpCustomer rows (authoritative)
        storefront_rows: StorefrontCustomer rows
        erp_aggregates: OrderAggregate per ERP customer id
        storefront_aggregates: OrderAggregate per storefront customer id

    Returns:
        One UnifiedCustomer per matching key
    """
    erp_aggregates = erp_aggregates or {}
    storefront_aggregates = storefront_aggregates or {}

    unified: Dict[str, UnifiedCustomer] = {}
    phone_index: Dict[str, str] = {}

    for row in erp_rows:
        customer = erp_to_unified(row, erp_aggregates.get(row.erp_id))
        existing = unified.get(customer.key)
        if existing is not None:
            # Same person entered twice in the ERP: first record keeps identity
            existing.erp_ids.append(row.erp_id)
            existing.total_orders += customer.total_orders
            existing.total_spent += customer.total_spent
            _apply_last_order(existing, erp_aggregates.get(row.erp_id))
            continue
        unified[customer.key] = customer
        for phone in (row.phone, row.mobile):
            phone_key = normalize_phone(phone)
            if phone_key:
                phone_index.setdefault(phone_key, customer.key)

    for row in storefront_rows:
        aggregate = storefront_aggregates.get(row.storefront_id)
        email_key = normalize_email(row.email)
        phone_key = normalize_phone(row.phone)

        existing = None
        if email_key and email_key in unified:
            existing = unified[email_key]
        elif phone_key and phone_key in phone_index:
            existing = unified[phone_index[phone_key]]

        if existing is None:
            customer = storefront_to_unified(row, aggregate)
            unified[customer.key] = customer
            if phone_key:
                phone_index.setdefault(phone_key, customer.key)
            continue

        orders, spent = storefront_totals(row, aggregate)
        if existing.storefront_id is None:
            existing.storefront_id = row.storefront_id
            existing.total_orders = orders
            existing.total_spent = spent
        else:
            # Second storefront record for the same person (e.g. guest + account)
            existing.total_orders += orders
            existing.total_spent += spent
        existing.storefront_ids.append(row.storefront_id)
        existing.sources.add(STOREFRONT)
        existing.email = existing.email or email_key
        existing.phone = existing.phone or row.phone
        existing.created_at = existing.created_at or row.created_at_source
        existing.last_updated = _later(existing.last_updated, row.last_modified_at)
        _apply_last_order(existing, aggregate)

    return list(unified.values())


def customer_stats(customers: Iterable[UnifiedCustomer]) -> Dict[str, Any]:
    """Counts per source combination and per segment"""
    stats = {
        "total": 0,
        "erp_only": 0,
        "storefront_only": 0,
        "both": 0,
        "segments": {name: 0 for name in SEGMENTS},
    }
    for customer in customers:
        stats["total"] += 1
        label = customer.source_label
        if label == "both":
            stats["both"] += 1
        elif label == ERP:
            stats["erp_only"] += 1
        elif label == STOREFRONT:
            stats["storefront_only"] += 1
        for segment in customer.segments:
            stats["segments"][segment] = stats["segments"].get(segment, 0) + 1
    return stats


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@dataclass
class UnifiedOrder:
    """A cached order from either source, in one shape"""
    key: str
    source: str
    source_id: Any
    order_number: Optional[str]
    status: Optional[str]
    status_label: Optional[str]
    order_date: Optional[datetime]
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_ref: Any
    total: Decimal
    currency: Optional[str]
    tracking_number: Optional[str]
    line_items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "source": self.source,
            "source_id": self.source_id,
            "order_number": self.order_number,
            "status": self.status,
            "status_label": self.status_label,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "total": float(self.total),
            "currency": self.currency,
            "tracking_number": self.tracking_number,
            "line_items": self.line_items,
        }


def erp_order_to_unified(row: Any) -> UnifiedOrder:
    return UnifiedOrder(
        key=f"{ERP}-{row.erp_id}",
        source=ERP,
        source_id=row.erp_id,
        order_number=row.order_number,
        status=row.status,
        status_label=row.status_label or row.status,
        order_date=row.order_date,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        customer_ref=row.erp_customer_id,
        total=Decimal(str(row.total or 0)),
        currency=row.currency,
        tracking_number=row.tracking_number,
        line_items=list(row.line_items or []),
    )


def storefront_order_to_unified(row: Any) -> UnifiedOrder:
    return UnifiedOrder(
        key=f"{STOREFRONT}-{row.storefront_id}",
        source=STOREFRONT,
        source_id=row.storefront_id,
        order_number=row.order_number,
        status=row.status,
        status_label=row.status_label or row.status,
        order_date=row.order_date,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        customer_ref=row.storefront_customer_id,
        total=Decimal(str(row.total or 0)),
        currency=row.currency,
        tracking_number=row.tracking_number,
        line_items=list(row.line_items or []),
    )


def merge_orders(erp_orders: Iterable[Any], storefront_orders: Iterable[Any]) -> List[UnifiedOrder]:
    """Both sources' orders, newest first (undated orders last)"""
    orders = [erp_order_to_unified(r) for r in erp_orders]
    orders.extend(storefront_order_to_unified(r) for r in storefront_orders)
    orders.sort(key=lambda o: (o.order_date is not None, o.order_date or datetime.min), reverse=True)
    return orders


def order_stats(orders: Iterable[UnifiedOrder]) -> Dict[str, Any]:
    stats = {
        "total": 0,
        "revenue": Decimal("0.00"),
        ERP: {"count": 0, "revenue": Decimal("0.00")},
        STOREFRONT: {"count": 0, "revenue": Decimal("0.00")},
    }
    for order in orders:
        stats["total"] += 1
        stats["revenue"] += order.total
        stats[order.source]["count"] += 1
        stats[order.source]["revenue"] += order.total
    stats["revenue"] = float(stats["revenue"])
    for source in (ERP, STOREFRONT):
        stats[source]["revenue"] = float(stats[source]["revenue"])
    return stats
