"""
Tests for record mapping and guest-customer derivation.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from app.connectors.erp import ErpCustomerRecord, ErpSaleDetailRecord, ErpSaleRecord
from app.connectors.storefront import StorefrontCustomerRecord, StorefrontOrderRecord
from app.services.record_mapping import (
    attach_sale_details,
    extract_guest_customers,
    guest_customer_id,
    parse_datetime,
    to_cached_row,
    to_cached_rows,
    to_money,
)


class TestErpMapping:

    def test_sale_total_rounded_and_label_added(self, fakes):
        record = ErpSaleRecord.from_payload(fakes.sale(7, total=1234.567))
        row = to_cached_row(record)

        assert row["erp_id"] == "sale-7"
        assert row["total"] == Decimal("1234.57")
        assert row["status_label"] == "Completed"
        assert row["erp_customer_id"] == "C1"
        assert row["order_date"] == datetime(2024, 5, 1)
        assert row["raw_data"]["SaleID"] == "sale-7"

    def test_sale_falls_back_to_invoice_amount(self, fakes):
        payload = fakes.sale(1)
        payload["SaleInvoicesTotalAmount"] = None
        payload["InvoiceAmount"] = 42
        row = to_cached_row(ErpSaleRecord.from_payload(payload))
        assert row["total"] == Decimal("42.00")

    def test_customer_email_from_default_contact(self, fakes):
        payload = fakes.erp_customer("C9", contacts=[
            {"Name": "Accounts", "Email": "accounts@acme.test"},
            {"Name": "Owner", "Email": "owner@acme.test", "Default": True},
        ])
        row = to_cached_row(ErpCustomerRecord.from_payload(payload))
        assert row["email"] == "owner@acme.test"

    def test_customer_email_from_first_contact_with_one(self, fakes):
        payload = fakes.erp_customer("C9", contacts=[{"Name": "Nobody"}, {"Email": " ops@acme.test "}])
        row = to_cached_row(ErpCustomerRecord.from_payload(payload))
        assert row["email"] == "ops@acme.test"

    def test_root_email_wins(self, fakes):
        payload = fakes.erp_customer("C9", email="root@acme.test", contacts=[{"Email": "c@acme.test", "Default": True}])
        row = to_cached_row(ErpCustomerRecord.from_payload(payload))
        assert row["email"] == "root@acme.test"
        assert row["last_modified_at"] == datetime(2024, 4, 1, 10, 0)


class TestErpSaleDetails:

    def test_sale_row_without_detail_has_empty_detail_fields(self, fakes):
        row = to_cached_row(ErpSaleRecord.from_payload(fakes.sale(1)))

        assert row["line_items"] == []
        assert row["customer_email"] is None
        assert row["invoice_status"] is None

    def test_detail_fills_lines_email_and_payment_term(self, fakes):
        sale = fakes.sale(1, total=250.0)
        detail = ErpSaleDetailRecord.from_payload(
            fakes.sale_detail(sale, [fakes.erp_customer("C1", email="buyer@acme.test")])
        )
        rows = to_cached_rows([ErpSaleRecord.from_payload(sale)])

        attach_sale_details(rows, {"sale-1": detail}, {"C1": "30 days"})

        row = rows[0]
        assert row["customer_email"] == "buyer@acme.test"
        assert row["payment_term"] == "30 days"
        assert row["line_items"] == [
            {"name": "Widget Pallet", "sku": "WP-1", "quantity": 1, "price": 250.0, "total": 250.0}
        ]
        assert row["invoice_total"] == Decimal("250.00")
        assert row["invoice_paid"] == Decimal("250.00")
        assert row["invoice_status"] == "PAID"
        assert row["invoice_due_date"] == datetime(2024, 5, 1)

    def test_invoice_lines_used_when_order_has_none(self, fakes):
        sale = fakes.sale(1)
        payload = fakes.sale_detail(sale, lines=[{"Quantity": 2, "Price": 5, "Total": 10}])
        payload["Order"]["Lines"] = []
        rows = to_cached_rows([ErpSaleRecord.from_payload(sale)])

        attach_sale_details(rows, {"sale-1": ErpSaleDetailRecord.from_payload(payload)}, {})

        assert rows[0]["line_items"][0]["name"] == "Unknown Product"
        assert rows[0]["line_items"][0]["quantity"] == 2

    def test_invoices_summed_and_short_payment_is_unpaid(self, fakes):
        sale = fakes.sale(1)
        payload = fakes.sale_detail(sale)
        payload["Invoices"] = [
            {"InvoiceDate": "2024-05-01T00:00:00Z", "Total": 100, "Paid": 100},
            {"InvoiceDate": "2024-05-20T00:00:00Z", "Total": 60, "Paid": 20},
        ]
        rows = to_cached_rows([ErpSaleRecord.from_payload(sale)])

        attach_sale_details(rows, {"sale-1": ErpSaleDetailRecord.from_payload(payload)}, {})

        assert rows[0]["invoice_total"] == Decimal("160.00")
        assert rows[0]["invoice_paid"] == Decimal("120.00")
        assert rows[0]["invoice_status"] == "UNPAID"
        assert rows[0]["invoice_due_date"] == datetime(2024, 5, 20)

    def test_sale_without_invoices(self, fakes):
        sale = fakes.sale(1)
        payload = fakes.sale_detail(sale)
        payload["Invoices"] = []
        rows = to_cached_rows([ErpSaleRecord.from_payload(sale)])

        attach_sale_details(rows, {"sale-1": ErpSaleDetailRecord.from_payload(payload)}, {})

        assert rows[0]["invoice_total"] is None
        assert rows[0]["invoice_status"] is None
        assert rows[0]["line_items"][0]["name"] == "Widget Pallet"


class TestStorefrontMapping:

    def test_order_fields(self, fakes):
        payload = fakes.order(11, customer_id=5, total="19.999")
        payload["meta_data"] = [{"key": "_wc_shipment_tracking_items", "value": [{"tracking_number": "TRK1"}]}]
        row = to_cached_row(StorefrontOrderRecord.from_payload(payload))

        assert row["storefront_id"] == 11
        assert row["order_number"] == "11"
        assert row["total"] == Decimal("20.00")
        assert row["status_label"] == "Completed"
        assert row["storefront_customer_id"] == 5
        assert row["customer_name"] == "Gina Guest"
        assert row["tracking_number"] == "TRK1"
        assert row["line_items"][0]["name"] == "Widget"

    def test_guest_order_has_no_customer_id(self, fakes):
        row = to_cached_row(StorefrontOrderRecord.from_payload(fakes.order(1)))
        assert row["storefront_customer_id"] is None

    def test_unknown_status_is_titled(self, fakes):
        payload = fakes.order(1)
        payload["status"] = "ready-to-ship"
        row = to_cached_row(StorefrontOrderRecord.from_payload(payload))
        assert row["status_label"] == "Ready To Ship"

    def test_customer_fields(self, fakes):
        payload = fakes.customer(3, "sam@example.com", phone="0411 222 333", orders_count=2, total_spent="80.5")
        row = to_cached_row(StorefrontCustomerRecord.from_payload(payload))

        assert row["storefront_id"] == 3
        assert row["phone"] == "0411 222 333"
        assert row["total_spent"] == Decimal("80.50")
        assert row["is_guest"] is False


def test_unmapped_record_type_raises():
    with pytest.raises(TypeError):
        to_cached_row({"id": 1})


def test_to_cached_rows_keeps_order(fakes):
    records = [ErpSaleRecord.from_payload(fakes.sale(i)) for i in (3, 1, 2)]
    assert [r["erp_id"] for r in to_cached_rows(records)] == ["sale-3", "sale-1", "sale-2"]


def test_to_money_handles_junk():
    assert to_money(None) == Decimal("0.00")
    assert to_money("") == Decimal("0.00")
    assert to_money("abc") == Decimal("0.00")
    assert to_money("10.456") == Decimal("10.46")


def test_parse_datetime_normalizes_to_naive_utc():
    assert parse_datetime("2024-05-01T10:00:00+10:00") == datetime(2024, 5, 1, 0, 0)
    assert parse_datetime("") is None
    assert parse_datetime("not a date") is None


# ────────────────────────────────────────────
# GUESTS
# ────────────────────────────────────────────


def _orders(fakes, *payloads):
    return [StorefrontOrderRecord.from_payload(p) for p in payloads]


def test_guest_orders_grouped_by_email(fakes):
    orders = _orders(
        fakes,
        fakes.order(1, email="Gina@Example.com", total="10.00", date_created="2024-01-01T00:00:00", first_name="Old"),
        fakes.order(2, email="gina@example.com", total="15.50", date_created="2024-03-01T00:00:00", first_name="New"),
        fakes.order(3, customer_id=9, email="member@example.com"),
    )
    guests = extract_guest_customers(orders, registered_emails=[])

    assert len(guests) == 1
    guest = guests[0]
    assert guest["email"] == "gina@example.com"
    assert guest["orders_count"] == 2
    assert guest["total_spent"] == Decimal("25.50")
    assert guest["first_name"] == "New"
    assert guest["created_at_source"] == datetime(2024, 1, 1)
    assert guest["last_modified_at"] == datetime(2024, 3, 1)
    assert guest["is_guest"] is True
    assert guest["storefront_id"] < 0


def test_guest_with_registered_email_is_skipped(fakes):
    orders = _orders(fakes, fakes.order(1, email="sam@example.com"))
    assert extract_guest_customers(orders, registered_emails=["SAM@example.com"]) == []


def test_guest_id_is_stable_and_negative():
    assert guest_customer_id("a@b.test") == guest_customer_id(" A@B.test ")
    assert guest_customer_id("a@b.test") < 0
    assert guest_customer_id("a@b.test") != guest_customer_id("c@d.test")
