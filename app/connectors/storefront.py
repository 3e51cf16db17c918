"""
Storefront Connector

Paginated client for the WooCommerce REST API (wc/v3).
Retail orders and registered customers from the web store.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.connectors.base import PaginatedSourceClient, Page


class StorefrontRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source: Literal["storefront"] = "storefront"
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        return cls.model_validate({**payload, "raw": payload})


class StorefrontOrderRecord(StorefrontRecord):
    """Order from GET /orders"""
    entity: Literal["orders"] = "orders"

    id: int
    number: Optional[str] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    date_created: Optional[str] = None
    date_modified: Optional[str] = None
    total: Optional[Decimal] = None
    shipping_total: Optional[Decimal] = None
    customer_id: Optional[int] = None  # 0 for guest checkout
    payment_method_title: Optional[str] = None
    billing: Dict[str, Any] = Field(default_factory=dict)
    meta_data: List[Dict[str, Any]] = Field(default_factory=list)
    line_items: List[Dict[str, Any]] = Field(default_factory=list)


class StorefrontCustomerRecord(StorefrontRecord):
    """Registered customer from GET /customers"""
    entity: Literal["customers"] = "customers"

    id: int
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    billing: Dict[str, Any] = Field(default_factory=dict)
    orders_count: Optional[int] = None
    total_spent: Optional[Decimal] = None
    avatar_url: Optional[str] = None
    date_created: Optional[str] = None
    date_modified: Optional[str] = None


class StorefrontClient(PaginatedSourceClient):
    """
    Client for the WooCommerce REST API

    Auth is the consumer key/secret pair sent as HTTP basic credentials.
    The collection total comes from the X-WP-Total response header.
    """

    source_name = "storefront"

    _RECORDS = {
        "orders": StorefrontOrderRecord,
        "customers": StorefrontCustomerRecord,
    }

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        page_size: int = 100,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.store_url = store_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.page_size = min(page_size, 100)
        self.base_url = f"{self.store_url}/wp-json/wc/v3"

    def is_configured(self) -> bool:
        return bool(self.store_url and self.consumer_key and self.consumer_secret)

    def default_page_size(self) -> int:
        return self.page_size

    def _get_auth(self) -> Optional[httpx.Auth]:
        return httpx.BasicAuth(self.consumer_key, self.consumer_secret)

    def _build_request(
        self,
        entity: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime]
    ) -> Tuple[str, Dict[str, Any]]:
        params: Dict[str, Any] = {"page": page, "per_page": min(page_size, 100)}
        if entity == "orders":
            params.update({"orderby": "date", "order": "desc"})
        else:
            params.update({"orderby": "registered_date", "order": "desc"})
        if modified_since is not None:
            params["modified_after"] = modified_since.strftime("%Y-%m-%dT%H:%M:%S")
        return f"{self.base_url}/{entity}", params

    def _embedded_errors(self, payload: Any) -> List[Any]:
        if isinstance(payload, dict):
            if payload.get("errors"):
                errors = payload["errors"]
                return list(errors.values()) if isinstance(errors, dict) else list(errors)
            if "code" in payload and "message" in payload:
                return [f"{payload['code']}: {payload['message']}"]
        return []

    def _parse_page(self, entity: str, payload: Any, response: httpx.Response) -> Page:
        record_cls = self._RECORDS[entity]
        items = payload if isinstance(payload, list) else []
        records = [record_cls.from_payload(item) for item in items]

        header_total = response.headers.get("X-WP-Total")
        try:
            total = int(header_total) if header_total is not None else len(records)
        except ValueError:
            total = len(records)
        return Page(records=records, total=total)
