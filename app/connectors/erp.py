"""
ERP Connector

Paginated client for the Cin7 Core (DEAR Inventory) External API v2.
Canonical source for customer identity and wholesale/B2B sales.

The API caps page size at 250 and is known to answer 200 OK with an
`Errors` array, which is treated the same as an HTTP failure.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.connectors.base import PaginatedSourceClient, Page, SourceAPIError, format_date


class ErpRecord(BaseModel):
    """Common shape for ERP records: provider field names, raw payload kept"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: Literal["erp"] = "erp"
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        return cls.model_validate({**payload, "raw": payload})


class ErpCustomerRecord(ErpRecord):
    """Customer from GET /customer"""
    entity: Literal["customers"] = "customers"

    id: str = Field(alias="ID")
    name: Optional[str] = Field(default=None, alias="Name")
    email: Optional[str] = Field(default=None, alias="Email")
    phone: Optional[str] = Field(default=None, alias="Phone")
    mobile: Optional[str] = Field(default=None, alias="Mobile")
    status: Optional[str] = Field(default=None, alias="Status")
    currency: Optional[str] = Field(default=None, alias="Currency")
    payment_term: Optional[str] = Field(default=None, alias="PaymentTerm")
    credit_limit: Optional[Decimal] = Field(default=None, alias="CreditLimit")
    discount: Optional[Decimal] = Field(default=None, alias="Discount")
    tax_number: Optional[str] = Field(default=None, alias="TaxNumber")
    tags: Optional[str] = Field(default=None, alias="Tags")
    addresses: List[Dict[str, Any]] = Field(default_factory=list, alias="Addresses")
    contacts: List[Dict[str, Any]] = Field(default_factory=list, alias="Contacts")
    last_modified_on: Optional[str] = Field(default=None, alias="LastModifiedOn")


class ErpSaleRecord(ErpRecord):
    """Sale summary from GET /saleList"""
    entity: Literal["orders"] = "orders"

    sale_id: str = Field(alias="SaleID")
    order_number: Optional[str] = Field(default=None, alias="OrderNumber")
    status: Optional[str] = Field(default=None, alias="Status")
    order_date: Optional[str] = Field(default=None, alias="OrderDate")
    customer: Optional[str] = Field(default=None, alias="Customer")
    customer_id: Optional[str] = Field(default=None, alias="CustomerID")
    invoice_number: Optional[str] = Field(default=None, alias="InvoiceNumber")
    invoice_amount: Optional[Decimal] = Field(default=None, alias="InvoiceAmount")
    sale_invoices_total_amount: Optional[Decimal] = Field(default=None, alias="SaleInvoicesTotalAmount")
    base_currency: Optional[str] = Field(default=None, alias="BaseCurrency")
    combined_tracking_numbers: Optional[str] = Field(default=None, alias="CombinedTrackingNumbers")
    combined_shipping_status: Optional[str] = Field(default=None, alias="CombinedShippingStatus")
    updated: Optional[str] = Field(default=None, alias="Updated")


class ErpSaleDetailRecord(ErpRecord):
    """Full sale from GET /sale?ID=, carrying lines and invoices"""
    entity: Literal["sale"] = "sale"

    id: str = Field(alias="ID")
    email: Optional[str] = Field(default=None, alias="Email")
    order: Optional[Dict[str, Any]] = Field(default=None, alias="Order")
    invoices: List[Dict[str, Any]] = Field(default_factory=list, alias="Invoices")


class ErpClient(PaginatedSourceClient):
    """
    Client for the ERP External API

    Auth is two static headers: account id and application key.
    """

    source_name = "erp"

    _ENDPOINTS = {
        "orders": ("/saleList", "SaleList", ErpSaleRecord),
        "customers": ("/customer", "CustomerList", ErpCustomerRecord),
    }

    def __init__(
        self,
        account_id: str,
        application_key: str,
        base_url: str = "https://inventory.dearsystems.com/ExternalApi/v2",
        page_size: int = 250,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.account_id = account_id
        self.application_key = application_key
        self.base_url = base_url.rstrip("/")
        self.page_size = min(page_size, 250)

    def is_configured(self) -> bool:
        return bool(self.account_id and self.application_key)

    def default_page_size(self) -> int:
        return self.page_size

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-auth-accountid": self.account_id,
            "api-auth-applicationkey": self.application_key,
        }

    def _build_request(
        self,
        entity: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime]
    ) -> Tuple[str, Dict[str, Any]]:
        path, _, _ = self._ENDPOINTS[entity]
        params: Dict[str, Any] = {"Page": page, "Limit": min(page_size, 250)}
        if modified_since is not None:
            params["ModifiedSince"] = format_date(modified_since)
        return f"{self.base_url}{path}", params

    def _embedded_errors(self, payload: Any) -> List[Any]:
        # Errors come either as an `Errors` array in the envelope or as a bare
        # list of {ErrorCode, Exception} objects
        if isinstance(payload, dict):
            return list(payload.get("Errors") or [])
        if isinstance(payload, list):
            return [
                e.get("Exception") or e
                for e in payload
                if isinstance(e, dict) and ("Exception" in e or "ErrorCode" in e)
            ]
        return []

    def _parse_page(self, entity: str, payload: Any, response: httpx.Response) -> Page:
        _, list_key, record_cls = self._ENDPOINTS[entity]
        if not isinstance(payload, dict):
            payload = {}
        items = payload.get(list_key) or []
        records = [record_cls.from_payload(item) for item in items]
        # A page with records but no Total still counts what it carries
        total = payload.get("Total")
        total = int(total) if total is not None else len(records)
        return Page(records=records, total=total)

    async def fetch_sale(self, sale_id: str) -> ErpSaleDetailRecord:
        """
        Fetch the full sale behind a saleList summary

        The list endpoint omits line items, the customer email and invoice
        payments; only the per-sale endpoint carries them. Raises like
        fetch_page does.
        """
        payload, response = await self._get_json(
            f"{self.base_url}/sale", {"ID": sale_id}, f"sale {sale_id}"
        )
        if not isinstance(payload, dict):
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} sale {sale_id} returned an unexpected body",
                status_code=response.status_code,
            )
        try:
            return ErpSaleDetailRecord.from_payload(payload)
        except ValidationError as e:
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} sale {sale_id} is malformed: {e}",
                status_code=response.status_code,
            ) from e
