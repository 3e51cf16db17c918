"""
Storefront Data Models

Cached copies of WooCommerce records.
Guest checkouts are stored as customers with a negative storefront_id.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, BigInteger, Numeric
from datetime import datetime

from app.models.base import Base


class StorefrontCustomer(Base):
    """
    Storefront customers (registered and derived guests)

    Synced from WooCommerce REST API: GET /wp-json/wc/v3/customers
    """
    __tablename__ = "storefront_customers"

    id = Column(Integer, primary_key=True, index=True)

    storefront_id = Column(BigInteger, unique=True, index=True, nullable=False)  # Negative for guests

    email = Column(String, index=True, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    username = Column(String, nullable=True)
    phone = Column(String, nullable=True)  # Billing phone
    company = Column(String, nullable=True)  # Billing company

    # Storefront's own order totals for this customer
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), default=0)

    avatar_url = Column(String, nullable=True)
    is_guest = Column(Boolean, default=False)
    created_at_source = Column(DateTime, nullable=True)

    last_modified_at = Column(DateTime, nullable=True)
    raw_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<StorefrontCustomer {self.storefront_id} {self.email}>"


class StorefrontOrder(Base):
    """
    Storefront orders

    Synced from WooCommerce REST API: GET /wp-json/wc/v3/orders
    """
    __tablename__ = "storefront_orders"

    id = Column(Integer, primary_key=True, index=True)

    storefront_id = Column(BigInteger, unique=True, index=True, nullable=False)
    order_number = Column(String, index=True)
    status = Column(String, index=True)  # pending, processing, completed...
    status_label = Column(String, nullable=True)
    order_date = Column(DateTime, index=True, nullable=True)

    # Customer (0 / null customer id means guest checkout)
    storefront_customer_id = Column(BigInteger, index=True, nullable=True)
    customer_email = Column(String, index=True, nullable=True)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)

    # Amounts
    total = Column(Numeric(12, 2), default=0)
    shipping_total = Column(Numeric(12, 2), default=0)
    currency = Column(String, default='AUD')
    payment_method = Column(String, nullable=True)

    tracking_number = Column(String, nullable=True)
    line_items = Column(JSON)  # [{name, sku, quantity, price, total}, ...]

    last_modified_at = Column(DateTime, nullable=True)
    raw_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<StorefrontOrder {self.order_number} {self.total}>"
