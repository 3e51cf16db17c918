"""
Shared fixtures: an in-memory database per test and stub APIs for both
sources, served through httpx.MockTransport.
"""
import os

# Settings are read at import time, so configure before importing the app
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_TO_FILE"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from app.config import Settings
from app.connectors.erp import ErpClient
from app.connectors.storefront import StorefrontClient
from app.models.base import build_engine, init_db


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite with all tables"""
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sync_settings():
    return Settings(
        sync_batch_delay_seconds=0,
        erp_detail_batch_delay_seconds=0,
        sync_max_pages=50,
        sync_concurrency=3,
        upsert_batch_size=500,
        sync_default_frequency="1hour",
    )


class FakeErpApi:
    """Paginates in-memory sales/customers like the ERP saleList/customer endpoints"""

    def __init__(self, sales=None, customers=None, fail_on_page=None, embedded_errors=None, status_code=200,
                 sale_details=None, fail_sale=None):
        self.sales = list(sales or [])
        self.customers = list(customers or [])
        self.fail_on_page = fail_on_page
        self.embedded_errors = embedded_errors
        self.status_code = status_code
        self.sale_details = dict(sale_details or {})
        self.fail_sale = fail_sale
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/sale"):
            return self.sale_handler(request)

        page = int(request.url.params["Page"])
        limit = int(request.url.params["Limit"])

        if self.status_code != 200:
            return httpx.Response(self.status_code, text="Service Unavailable")
        if self.fail_on_page == page:
            return httpx.Response(500, text=f"page {page} exploded")
        if self.embedded_errors:
            return httpx.Response(200, json={"Total": 0, "Errors": self.embedded_errors})

        if request.url.path.endswith("/saleList"):
            items, key = self.sales, "SaleList"
        else:
            items, key = self.customers, "CustomerList"
        chunk = items[(page - 1) * limit:page * limit]
        return httpx.Response(200, json={"Total": len(items), "Page": page, key: chunk})

    def sale_handler(self, request: httpx.Request) -> httpx.Response:
        sale_id = request.url.params["ID"]
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="Service Unavailable")
        if self.fail_sale == sale_id:
            return httpx.Response(500, text=f"sale {sale_id} exploded")
        if sale_id in self.sale_details:
            return httpx.Response(200, json=self.sale_details[sale_id])
        sale = next((s for s in self.sales if s["SaleID"] == sale_id), None)
        if sale is None:
            return httpx.Response(404, text=f"sale {sale_id} not found")
        return httpx.Response(200, json=erp_sale_detail(sale, self.customers))

    def pages_requested(self, path_suffix: str):
        return sorted(
            int(r.url.params["Page"]) for r in self.requests if r.url.path.endswith(path_suffix)
        )

    def client(self, page_size=250):
        return ErpClient(
            account_id="acct",
            application_key="key",
            base_url="https://erp.test/ExternalApi/v2",
            page_size=page_size,
            transport=httpx.MockTransport(self.handler),
        )


class FakeStorefrontApi:
    """Paginates in-memory orders/customers like the WooCommerce REST API"""

    def __init__(self, orders=None, customers=None, raise_timeout=False):
        self.orders = list(orders or [])
        self.customers = list(customers or [])
        self.raise_timeout = raise_timeout
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("timeout", request=request)

        page = int(request.url.params["page"])
        per_page = int(request.url.params["per_page"])
        items = self.orders if request.url.path.endswith("/orders") else self.customers
        chunk = items[(page - 1) * per_page:page * per_page]
        return httpx.Response(200, json=chunk, headers={"X-WP-Total": str(len(items))})

    def client(self, page_size=100):
        return StorefrontClient(
            store_url="https://shop.test",
            consumer_key="ck_test",
            consumer_secret="cs_test",
            page_size=page_size,
            transport=httpx.MockTransport(self.handler),
        )


def erp_sale(n, customer_id="C1", total=100.0, order_date="2024-05-01T00:00:00Z"):
    return {
        "SaleID": f"sale-{n}",
        "OrderNumber": f"SO-{n:05d}",
        "Status": "COMPLETED",
        "OrderDate": order_date,
        "Customer": "Acme Pty Ltd",
        "CustomerID": customer_id,
        "InvoiceAmount": total,
        "SaleInvoicesTotalAmount": total,
        "BaseCurrency": "AUD",
        "Updated": order_date,
    }


def erp_sale_detail(sale, customers=(), lines=None):
    """GET /sale body for a saleList item: one line, one fully paid invoice"""
    customer = next((c for c in customers if c["ID"] == sale.get("CustomerID")), {})
    total = sale.get("SaleInvoicesTotalAmount") or 0
    lines = lines if lines is not None else [
        {"SKU": "WP-1", "Name": "Widget Pallet", "Quantity": 1, "Price": total, "Total": total},
    ]
    return {
        "ID": sale["SaleID"],
        "Status": sale.get("Status"),
        "Customer": sale.get("Customer"),
        "CustomerID": sale.get("CustomerID"),
        "Email": customer.get("Email", ""),
        "Order": {"SaleOrderNumber": sale.get("OrderNumber"), "Lines": lines, "Total": total},
        "Invoices": [{
            "InvoiceNumber": f"INV-{sale['SaleID']}",
            "Status": "PAID",
            "InvoiceDate": sale.get("OrderDate"),
            "Lines": lines,
            "Total": total,
            "Paid": total,
        }],
    }


def erp_customer(customer_id, name="Acme Pty Ltd", email=None, phone=None, contacts=None):
    data = {
        "ID": customer_id,
        "Name": name,
        "Status": "Active",
        "Currency": "AUD",
        "Contacts": contacts or [],
        "Addresses": [],
        "LastModifiedOn": "2024-04-01T10:00:00Z",
    }
    if email is not None:
        data["Email"] = email
    if phone is not None:
        data["Phone"] = phone
    return data


def storefront_order(n, customer_id=0, email="guest@example.com", total="59.95",
                     date_created="2024-05-02T09:30:00", first_name="Gina", last_name="Guest"):
    return {
        "id": n,
        "number": str(n),
        "status": "completed",
        "currency": "AUD",
        "date_created": date_created,
        "date_modified": date_created,
        "total": total,
        "shipping_total": "10.00",
        "customer_id": customer_id,
        "payment_method_title": "Credit Card",
        "billing": {"first_name": first_name, "last_name": last_name, "email": email, "phone": "0400 000 000"},
        "meta_data": [],
        "line_items": [{"name": "Widget", "sku": "W-1", "quantity": 1, "price": 49.95, "total": "49.95"}],
    }


def storefront_customer(n, email, first_name="Sam", last_name="Shopper", phone="", orders_count=0, total_spent="0.00"):
    return {
        "id": n,
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "username": email.split("@")[0],
        "billing": {"phone": phone, "company": ""},
        "orders_count": orders_count,
        "total_spent": total_spent,
        "avatar_url": "",
        "date_created": "2023-01-01T00:00:00",
        "date_modified": "2024-01-01T00:00:00",
    }


@pytest.fixture
def fakes():
    """Payload builders and stub API classes"""
    class Fakes:
        ErpApi = FakeErpApi
        StorefrontApi = FakeStorefrontApi
        sale = staticmethod(erp_sale)
        sale_detail = staticmethod(erp_sale_detail)
        erp_customer = staticmethod(erp_customer)
        order = staticmethod(storefront_order)
        customer = staticmethod(storefront_customer)
    return Fakes
