"""
ERP Data Models

Cached copies of Cin7 Core (DEAR Inventory) records.
The ERP is the canonical operational record for customer identity.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric, Text
from datetime import datetime

from app.models.base import Base


class ErpCustomer(Base):
    """
    ERP customers

    Synced from ERP API: GET /customer
    """
    __tablename__ = "erp_customers"

    id = Column(Integer, primary_key=True, index=True)

    # Conflict key for upserts
    erp_id = Column(String, unique=True, index=True, nullable=False)  # Customer GUID

    # Identity
    name = Column(String, index=True)
    email = Column(String, index=True, nullable=True)
    phone = Column(String, nullable=True)
    mobile = Column(String, nullable=True)
    company = Column(String, nullable=True)
    status = Column(String, nullable=True)  # Active, Deprecated

    # Commercial terms
    currency = Column(String, nullable=True)
    payment_term = Column(String, nullable=True)
    credit_limit = Column(Numeric(12, 2), nullable=True)
    discount = Column(Numeric(6, 2), nullable=True)
    tax_number = Column(String, nullable=True)
    tags = Column(Text, nullable=True)

    addresses = Column(JSON, nullable=True)
    contacts = Column(JSON, nullable=True)

    last_modified_at = Column(DateTime, nullable=True)
    raw_data = Column(JSON, nullable=True)  # Fields not otherwise modeled
    synced_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ErpCustomer {self.erp_id} {self.name}>"


class ErpOrder(Base):
    """
    ERP sales

    Synced from ERP API: GET /saleList, with lines, email and invoice
    payments filled in from GET /sale?ID=
    """
    __tablename__ = "erp_orders"

    id = Column(Integer, primary_key=True, index=True)

    erp_id = Column(String, unique=True, index=True, nullable=False)  # SaleID
    order_number = Column(String, index=True)
    status = Column(String, index=True)  # DRAFT, ORDERED, INVOICED, COMPLETED, VOIDED...
    status_label = Column(String, nullable=True)
    order_date = Column(DateTime, index=True, nullable=True)

    # Customer
    erp_customer_id = Column(String, index=True, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, index=True, nullable=True)
    payment_term = Column(String, nullable=True)  # Copied from the cached customer

    # Amounts
    total = Column(Numeric(12, 2), default=0)  # Invoiced total
    currency = Column(String, default='AUD')

    # Fulfilment
    tracking_number = Column(String, nullable=True)
    shipping_status = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True)

    # Invoice payments, summed over every invoice on the sale
    invoice_total = Column(Numeric(12, 2), nullable=True)
    invoice_paid = Column(Numeric(12, 2), nullable=True)
    invoice_due_date = Column(DateTime, nullable=True)  # Latest invoice date
    invoice_status = Column(String, nullable=True)  # PAID, UNPAID

    line_items = Column(JSON, nullable=True)

    last_modified_at = Column(DateTime, nullable=True)
    raw_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ErpOrder {self.order_number} {self.total}>"
