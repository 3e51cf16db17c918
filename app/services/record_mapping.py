"""
Record mapping

Translates typed external records into cached-row dicts for the upsert
writer. Dispatch is on the record class, so an unmapped record type fails
loudly instead of being stored half-translated.

ERP sale summaries are completed from their sale details. Also derives
guest customers from storefront orders that were placed without an
account.
"""
import zlib
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from dateutil import parser as date_parser

from app.connectors.erp import ErpCustomerRecord, ErpSaleDetailRecord, ErpSaleRecord
from app.connectors.storefront import StorefrontCustomerRecord, StorefrontOrderRecord
from app.models.erp import ErpCustomer, ErpOrder
from app.models.storefront import StorefrontCustomer, StorefrontOrder

TWO_PLACES = Decimal("0.01")

ERP_STATUS_LABELS = {
    "DRAFT": "Draft",
    "ESTIMATING": "Estimating",
    "ESTIMATED": "Estimated",
    "ORDERING": "Ordering",
    "ORDERED": "Ordered",
    "BACKORDERED": "Backordered",
    "PICKING": "Picking",
    "PACKING": "Packing",
    "SHIPPING": "Shipping",
    "INVOICED": "Invoiced",
    "COMPLETED": "Completed",
    "CREDITED": "Credited",
    "VOIDED": "Voided",
}

STOREFRONT_STATUS_LABELS = {
    "pending": "Pending Payment",
    "processing": "Processing",
    "on-hold": "On Hold",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "refunded": "Refunded",
    "failed": "Failed",
    "trash": "Deleted",
}

TRACKING_META_KEYS = ("_wc_shipment_tracking_items", "tracking_number")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def to_money(value: Any) -> Decimal:
    """Numeric amount rounded to cents; blanks and junk become 0.00"""
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(TWO_PLACES)
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


def to_optional_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_money(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-ish timestamp into naive UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except ValueError:
            try:
                dt = date_parser.parse(str(value))
            except (ValueError, OverflowError):
                return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def erp_customer_email(record: ErpCustomerRecord) -> Optional[str]:
    """Root email, else the default contact's, else the first contact that has one"""
    if _blank_to_none(record.email):
        return record.email.strip()
    contacts = record.contacts or []
    default = next((c for c in contacts if c.get("Default")), None)
    if default and _blank_to_none(default.get("Email")):
        return default["Email"].strip()
    with_email = next((c for c in contacts if _blank_to_none(c.get("Email"))), None)
    if with_email:
        return with_email["Email"].strip()
    return None


def storefront_tracking_number(meta_data: List[Dict[str, Any]]) -> Optional[str]:
    meta = next((m for m in meta_data or [] if m.get("key") in TRACKING_META_KEYS), None)
    if not meta or not meta.get("value"):
        return None
    value = meta["value"]
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        return value.get("tracking_number") or value.get("number")
    if isinstance(value, str):
        return value
    return None


def _line_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": item.get("name"),
            "sku": item.get("sku"),
            "quantity": item.get("quantity") or 0,
            "price": float(to_money(item.get("price"))),
            "total": float(to_money(item.get("total"))),
        }
        for item in items or []
    ]


def _full_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    return _blank_to_none(f"{first or ''} {last or ''}")


# ---------------------------------------------------------------------------
# Per-record translation
# ---------------------------------------------------------------------------

def map_erp_customer(record: ErpCustomerRecord) -> Dict[str, Any]:
    return {
        "erp_id": record.id,
        "name": record.name,
        "email": erp_customer_email(record),
        "phone": _blank_to_none(record.phone),
        "mobile": _blank_to_none(record.mobile),
        "company": record.name,
        "status": record.status,
        "currency": record.currency or "AUD",
        "payment_term": record.payment_term,
        "credit_limit": to_optional_money(record.credit_limit),
        "discount": to_optional_money(record.discount),
        "tax_number": _blank_to_none(record.tax_number),
        "tags": _blank_to_none(record.tags),
        "addresses": record.addresses or [],
        "contacts": record.contacts or [],
        "last_modified_at": parse_datetime(record.last_modified_on),
        "raw_data": record.raw,
    }


def map_erp_sale(record: ErpSaleRecord) -> Dict[str, Any]:
    total = record.sale_invoices_total_amount or record.invoice_amount or 0
    return {
        "erp_id": record.sale_id,
        "order_number": record.order_number,
        "status": record.status,
        "status_label": ERP_STATUS_LABELS.get(record.status or "", record.status),
        "order_date": parse_datetime(record.order_date),
        "erp_customer_id": record.customer_id,
        "customer_name": record.customer,
        "total": to_money(total),
        "currency": record.base_currency or "AUD",
        "tracking_number": _blank_to_none(record.combined_tracking_numbers),
        "shipping_status": _blank_to_none(record.combined_shipping_status),
        "invoice_number": _blank_to_none(record.invoice_number),
        # Filled from the sale detail by attach_sale_details
        "customer_email": None,
        "payment_term": None,
        "line_items": [],
        "invoice_total": None,
        "invoice_paid": None,
        "invoice_due_date": None,
        "invoice_status": None,
        "last_modified_at": parse_datetime(record.updated),
        "raw_data": record.raw,
    }


def map_storefront_customer(record: StorefrontCustomerRecord) -> Dict[str, Any]:
    billing = record.billing or {}
    return {
        "storefront_id": record.id,
        "email": _blank_to_none(record.email),
        "first_name": record.first_name,
        "last_name": record.last_name,
        "username": record.username,
        "phone": _blank_to_none(billing.get("phone")),
        "company": _blank_to_none(billing.get("company")),
        "orders_count": record.orders_count or 0,
        "total_spent": to_money(record.total_spent),
        "avatar_url": record.avatar_url,
        "is_guest": False,
        "created_at_source": parse_datetime(record.date_created),
        "last_modified_at": parse_datetime(record.date_modified),
        "raw_data": record.raw,
    }


def map_storefront_order(record: StorefrontOrderRecord) -> Dict[str, Any]:
    billing = record.billing or {}
    status = record.status or ""
    return {
        "storefront_id": record.id,
        "order_number": str(record.number or record.id),
        "status": record.status,
        "status_label": STOREFRONT_STATUS_LABELS.get(status, status.replace("-", " ").title() or None),
        "order_date": parse_datetime(record.date_created),
        "storefront_customer_id": record.customer_id or None,
        "customer_email": _blank_to_none(billing.get("email")),
        "customer_name": _full_name(billing.get("first_name"), billing.get("last_name")),
        "customer_phone": _blank_to_none(billing.get("phone")),
        "total": to_money(record.total),
        "shipping_total": to_money(record.shipping_total),
        "currency": record.currency or "AUD",
        "payment_method": record.payment_method_title,
        "tracking_number": storefront_tracking_number(record.meta_data),
        "line_items": _line_items(record.line_items),
        "last_modified_at": parse_datetime(record.date_modified),
        "raw_data": record.raw,
    }


_MAPPERS = {
    ErpCustomerRecord: map_erp_customer,
    ErpSaleRecord: map_erp_sale,
    StorefrontCustomerRecord: map_storefront_customer,
    StorefrontOrderRecord: map_storefront_order,
}

# (source, entity) -> (model, conflict key)
TARGETS = {
    ("erp", "customers"): (ErpCustomer, "erp_id"),
    ("erp", "orders"): (ErpOrder, "erp_id"),
    ("storefront", "customers"): (StorefrontCustomer, "storefront_id"),
    ("storefront", "orders"): (StorefrontOrder, "storefront_id"),
}


def to_cached_row(record: Any) -> Dict[str, Any]:
    """Translate one external record into a cached row"""
    mapper = _MAPPERS.get(type(record))
    if mapper is None:
        raise TypeError(f"No cached-row mapping for {type(record).__name__}")
    return mapper(record)


def to_cached_rows(records: Iterable[Any]) -> List[Dict[str, Any]]:
    return [to_cached_row(r) for r in records]


# ---------------------------------------------------------------------------
# ERP sale details
# ---------------------------------------------------------------------------

def erp_sale_lines(detail: ErpSaleDetailRecord) -> List[Dict[str, Any]]:
    """Order lines, else the first invoice's lines"""
    lines = (detail.order or {}).get("Lines") or []
    if not lines and detail.invoices:
        lines = detail.invoices[0].get("Lines") or []
    return [
        {
            "name": line.get("Name") or "Unknown Product",
            "sku": line.get("SKU"),
            "quantity": line.get("Quantity") or 0,
            "price": float(to_money(line.get("Price"))),
            "total": float(to_money(line.get("Total"))),
        }
        for line in lines
    ]


def erp_invoice_summary(detail: ErpSaleDetailRecord) -> Dict[str, Any]:
    """
    Invoice totals summed over every invoice on the sale

    The API exposes no due date, so the latest invoice date stands in.
    A sale is UNPAID when any invoice is paid short of its total.
    """
    if not detail.invoices:
        return {"invoice_total": None, "invoice_paid": None, "invoice_due_date": None, "invoice_status": None}

    total = Decimal("0.00")
    paid = Decimal("0.00")
    due: Optional[datetime] = None
    status = "PAID"
    for invoice in detail.invoices:
        amount = to_money(invoice.get("Total"))
        settled = to_money(invoice.get("Paid"))
        total += amount
        paid += settled
        invoice_date = parse_datetime(invoice.get("InvoiceDate"))
        if invoice_date and (due is None or invoice_date > due):
            due = invoice_date
        if settled < amount:
            status = "UNPAID"

    return {
        "invoice_total": total if total else None,
        "invoice_paid": paid,
        "invoice_due_date": due,
        "invoice_status": status if total > 0 else None,
    }


def attach_sale_details(
    rows: List[Dict[str, Any]],
    details: Dict[str, ErpSaleDetailRecord],
    payment_terms: Dict[str, str]
) -> List[Dict[str, Any]]:
    """Fill ERP order rows in place from their sale details and customers' payment terms"""
    for row in rows:
        row["payment_term"] = payment_terms.get(row.get("erp_customer_id") or "")
        detail = details.get(row["erp_id"])
        if detail is None:
            continue
        row["customer_email"] = _blank_to_none(detail.email)
        row["line_items"] = erp_sale_lines(detail)
        row.update(erp_invoice_summary(detail))
    return rows


# ---------------------------------------------------------------------------
# Guest customers
# ---------------------------------------------------------------------------

def guest_customer_id(email: str) -> int:
    """Stable negative id for a guest, so it never collides with a real customer"""
    return -(zlib.crc32(email.strip().lower().encode("utf-8")) + 1)


def extract_guest_customers(
    orders: Iterable[StorefrontOrderRecord],
    registered_emails: Iterable[str]
) -> List[Dict[str, Any]]:
    """
    Build customer rows for guest checkouts

    Orders placed with no customer id and an email that no registered
    customer uses are grouped by email. Identity fields come from the most
    recent order; count and spend accumulate over all of them.
    """
    registered = {e.strip().lower() for e in registered_emails if e}
    guests: Dict[str, Dict[str, Any]] = {}
    latest: Dict[str, Optional[datetime]] = {}

    for order in orders:
        if order.customer_id:
            continue
        billing = order.billing or {}
        email = _blank_to_none(billing.get("email"))
        if not email:
            continue
        email_key = email.lower()
        if email_key in registered:
            continue

        order_date = parse_datetime(order.date_created)
        guest = guests.get(email_key)
        if guest is None:
            guest = {
                "storefront_id": guest_customer_id(email_key),
                "email": email_key,
                "orders_count": 0,
                "total_spent": Decimal("0.00"),
                "avatar_url": None,
                "username": None,
                "is_guest": True,
                "created_at_source": order_date,
                "last_modified_at": order_date,
                "raw_data": {"guest": True},
            }
            guests[email_key] = guest
            latest[email_key] = None

        guest["orders_count"] += 1
        guest["total_spent"] = (guest["total_spent"] + to_money(order.total)).quantize(TWO_PLACES)

        if order_date and (guest["created_at_source"] is None or order_date < guest["created_at_source"]):
            guest["created_at_source"] = order_date

        newest = latest[email_key]
        if newest is None or (order_date is not None and order_date >= newest):
            latest[email_key] = order_date or newest
            guest["first_name"] = billing.get("first_name")
            guest["last_name"] = billing.get("last_name")
            guest["phone"] = _blank_to_none(billing.get("phone"))
            guest["company"] = _blank_to_none(billing.get("company"))
            guest["last_modified_at"] = order_date

    return list(guests.values())
