"""
Customer Query Service

Read side of the cache: reconciles both sources' customers, attaches
order aggregates and segments, then filters, sorts and pages the result.
Everything is recomputed per request so threshold changes and fresh
syncs show up immediately.
"""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.erp import ErpCustomer, ErpOrder
from app.models.storefront import StorefrontCustomer, StorefrontOrder
from app.services.reconciliation import (
    ERP,
    STOREFRONT,
    UnifiedCustomer,
    customer_stats,
    merge_customers,
    merge_orders,
    normalize_email,
    order_stats,
)
from app.services.record_mapping import guest_customer_id
from app.services.segment_settings_service import get_segment_settings
from app.services.segmentation import SEGMENTS, OrderAggregate, aggregate_orders, classify

SORT_FIELDS = ("total_spent", "total_orders", "last_order_date", "name")
SOURCE_FILTERS = (ERP, STOREFRONT, "both")
MAX_LIMIT = 500


def read_all(db: Session, model, page_size: int = 1000) -> List[Any]:
    """Load every row of a table in fixed-size ranges, ordered by primary key"""
    rows: List[Any] = []
    offset = 0
    while True:
        chunk = db.query(model).order_by(model.id).offset(offset).limit(page_size).all()
        rows.extend(chunk)
        if len(chunk) < page_size:
            return rows
        offset += page_size


def _paginate(items: List[Any], page: int, limit: int) -> Dict[str, Any]:
    total = len(items)
    start = (page - 1) * limit
    return {
        "items": items[start:start + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValueError("page must be at least 1")
    if limit < 1 or limit > MAX_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")


class CustomerQueryService:
    """Reconciled customer and order views over the sync cache"""

    def __init__(self, db: Session, read_page_size: Optional[int] = None):
        self.db = db
        self.read_page_size = read_page_size or get_settings().read_page_size

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, model) -> List[Any]:
        return read_all(self.db, model, self.read_page_size)

    def _storefront_order_key(self, registered_by_email: Dict[str, int]):
        def key(order):
            if order.storefront_customer_id:
                return order.storefront_customer_id
            email = normalize_email(order.customer_email)
            if not email:
                return None
            return registered_by_email.get(email, guest_customer_id(email))
        return key

    def reconcile(self, now: Optional[datetime] = None) -> List[UnifiedCustomer]:
        """Every unified customer with aggregates and segments attached"""
        now = now or datetime.utcnow()
        erp_customers = self._load(ErpCustomer)
        storefront_customers = self._load(StorefrontCustomer)
        erp_orders = self._load(ErpOrder)
        storefront_orders = self._load(StorefrontOrder)

        registered_by_email = {
            normalize_email(c.email): c.storefront_id
            for c in storefront_customers
            if c.email and not c.is_guest
        }
        erp_aggregates = aggregate_orders(erp_orders, lambda o: o.erp_customer_id)
        storefront_aggregates = aggregate_orders(
            storefront_orders, self._storefront_order_key(registered_by_email)
        )

        customers = merge_customers(
            erp_customers, storefront_customers, erp_aggregates, storefront_aggregates
        )

        settings = get_segment_settings(self.db)
        for customer in customers:
            aggregate = OrderAggregate(
                count=customer.total_orders,
                total_spent=customer.total_spent,
                last_order_date=customer.last_order_date,
                last_order_product=customer.last_order_product,
            )
            customer.segments = classify(customer, aggregate, settings, now)
        return customers

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def list_customers(
        self,
        search: Optional[str] = None,
        source: Optional[str] = None,
        segment: Optional[str] = None,
        sort_by: str = "total_spent",
        sort_dir: str = "desc",
        page: int = 1,
        limit: int = 50,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Filtered, sorted page of unified customers

        Stats cover the whole filtered set, not just the returned page.

        Raises:
            ValueError: invalid filter, sort or paging parameter
        """
        if source and source not in SOURCE_FILTERS:
            raise ValueError(f"source must be one of: {', '.join(SOURCE_FILTERS)}")
        if segment and segment not in SEGMENTS:
            raise ValueError(f"segment must be one of: {', '.join(SEGMENTS)}")
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}")
        if sort_dir not in ("asc", "desc"):
            raise ValueError("sort_dir must be 'asc' or 'desc'")
        _check_paging(page, limit)

        customers = self.reconcile(now)

        if search:
            needle = search.strip().lower()
            customers = [c for c in customers if self._matches(c, needle)]
        if source:
            customers = [c for c in customers if c.source_label == source]
        if segment:
            customers = [c for c in customers if segment in c.segments]

        customers = self._sort(customers, sort_by, sort_dir == "desc")
        paged = _paginate(customers, page, limit)
        return {
            "customers": [c.to_dict() for c in paged["items"]],
            "pagination": paged["pagination"],
            "stats": customer_stats(customers),
        }

    @staticmethod
    def _matches(customer: UnifiedCustomer, needle: str) -> bool:
        haystack = (customer.name, customer.email, customer.phone, customer.company)
        return any(needle in value.lower() for value in haystack if value)

    @staticmethod
    def _sort(customers: List[UnifiedCustomer], sort_by: str, descending: bool) -> List[UnifiedCustomer]:
        def value(c: UnifiedCustomer):
            v = getattr(c, sort_by)
            if sort_by == "name" and v is not None:
                return v.lower()
            return v

        present = [c for c in customers if value(c) is not None]
        missing = [c for c in customers if value(c) is None]
        present.sort(key=value, reverse=descending)
        return present + missing

    def get_customer(self, key: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """One unified customer with its orders from both sources, or None"""
        customer = next((c for c in self.reconcile(now) if c.key == key), None)
        if customer is None:
            return None

        erp_orders = []
        if customer.erp_ids:
            erp_orders = (
                self.db.query(ErpOrder)
                .filter(ErpOrder.erp_customer_id.in_(customer.erp_ids))
                .all()
            )

        storefront_orders = []
        registered_ids = [i for i in customer.storefront_ids if i > 0]
        if registered_ids:
            storefront_orders.extend(
                self.db.query(StorefrontOrder)
                .filter(StorefrontOrder.storefront_customer_id.in_(registered_ids))
                .all()
            )
        if customer.email and STOREFRONT in customer.sources:
            seen = {o.id for o in storefront_orders}
            guest_orders = [
                o for o in self.db.query(StorefrontOrder)
                .filter(StorefrontOrder.storefront_customer_id.is_(None))
                .all()
                if normalize_email(o.customer_email) == customer.email and o.id not in seen
            ]
            storefront_orders.extend(guest_orders)

        orders = merge_orders(erp_orders, storefront_orders)
        return {
            "customer": customer.to_dict(),
            "orders": [o.to_dict() for o in orders],
            "order_stats": order_stats(orders),
        }

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def list_orders(
        self,
        search: Optional[str] = None,
        source: Optional[str] = None,
        page: int = 1,
        limit: int = 50
    ) -> Dict[str, Any]:
        """Both sources' orders, newest first"""
        if source and source not in (ERP, STOREFRONT):
            raise ValueError(f"source must be '{ERP}' or '{STOREFRONT}'")
        _check_paging(page, limit)

        erp_orders = self._load(ErpOrder) if source in (None, ERP) else []
        storefront_orders = self._load(StorefrontOrder) if source in (None, STOREFRONT) else []
        orders = merge_orders(erp_orders, storefront_orders)

        if search:
            needle = search.strip().lower()
            orders = [
                o for o in orders
                if any(
                    needle in str(v).lower()
                    for v in (o.order_number, o.customer_name, o.customer_email, o.tracking_number)
                    if v
                )
            ]

        paged = _paginate(orders, page, limit)
        return {
            "orders": [o.to_dict() for o in paged["items"]],
            "pagination": paged["pagination"],
            "stats": order_stats(orders),
        }
