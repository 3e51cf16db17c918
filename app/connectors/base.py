"""
Base Source Client

Every external source exposes paginated list endpoints for customers and
orders. This base class owns the request path shared by all of them:
timeouts, status checks, detection of errors embedded in successful
responses, and parsing of the page into typed records.

Clients never retry and never swallow failures. A failed page raises.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from app.utils.logger import log

ENTITIES = ("customers", "orders")


class SourceError(Exception):
    """Base class for failures talking to an external source"""

    def __init__(self, source: str, message: str):
        super().__init__(message)
        self.source = source
        self.message = message


class SourceNotConfiguredError(SourceError):
    """Credentials for the source are missing"""


class SourceAPIError(SourceError):
    """Non-2xx response, timeout, transport failure or unreadable payload"""

    def __init__(
        self,
        source: str,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None
    ):
        super().__init__(source, message)
        self.status_code = status_code
        self.body = body


class EmbeddedAPIError(SourceAPIError):
    """2xx response whose envelope carries an error list"""

    def __init__(self, source: str, errors: List[Any], status_code: Optional[int] = None):
        detail = "; ".join(str(e) for e in errors[:5])
        super().__init__(
            source,
            f"{source} API reported errors: {detail}",
            status_code=status_code,
        )
        self.errors = errors


@dataclass
class Page:
    """One page of typed records plus the total the source reports"""
    records: List[Any] = field(default_factory=list)
    total: int = 0


class PaginatedSourceClient(ABC):
    """
    Base class for paginated source clients

    Subclasses describe their endpoints and envelopes; this class runs the
    request and enforces the failure contract.
    """

    source_name: str = ""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            timeout: Seconds before a single page request is abandoned
            transport: Optional httpx transport (used to stub the API in tests)
        """
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials for this source are present"""

    @abstractmethod
    def default_page_size(self) -> int:
        """Largest page size the provider accepts"""

    @abstractmethod
    def _build_request(
        self,
        entity: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime]
    ) -> Tuple[str, Dict[str, Any]]:
        """Return (url, query params) for one page"""

    @abstractmethod
    def _parse_page(self, entity: str, payload: Any, response: httpx.Response) -> Page:
        """Turn a decoded response body into a Page of typed records"""

    def _get_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _get_auth(self) -> Optional[httpx.Auth]:
        return None

    def _embedded_errors(self, payload: Any) -> List[Any]:
        """Errors reported inside a 2xx body (empty list when none)"""
        return []

    async def fetch_page(
        self,
        entity: str,
        page: int,
        page_size: Optional[int] = None,
        modified_since: Optional[datetime] = None
    ) -> Page:
        """
        Fetch one page of customers or orders

        Args:
            entity: 'customers' or 'orders'
            page: 1-based page number
            page_size: Records per page (defaults to the provider maximum)
            modified_since: Only records modified on/after this time

        Returns:
            Page with typed records and the source's total count

        Raises:
            SourceNotConfiguredError, SourceAPIError, EmbeddedAPIError
        """
        if entity not in ENTITIES:
            raise ValueError(f"Unknown entity: {entity}")

        page_size = page_size or self.default_page_size()
        url, params = self._build_request(entity, page, page_size, modified_since)
        payload, response = await self._get_json(url, params, f"{entity} page {page}")

        try:
            return self._parse_page(entity, payload, response)
        except ValidationError as e:
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} {entity} page {page} contained a malformed record: {e}",
                status_code=response.status_code,
            ) from e

    async def _get_json(self, url: str, params: Dict[str, Any], what: str) -> Tuple[Any, httpx.Response]:
        """
        GET one resource and decode it, enforcing the failure contract

        Args:
            url: Absolute endpoint URL
            params: Query parameters
            what: Short label for log and error messages (e.g. "orders page 3")

        Returns:
            (decoded JSON body, response)
        """
        if not self.is_configured():
            raise SourceNotConfiguredError(
                self.source_name, f"{self.source_name} credentials are not configured"
            )

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(
                    url,
                    params=params,
                    headers=self._get_headers(),
                    auth=self._get_auth(),
                )
        except httpx.TimeoutException as e:
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} {what} timed out after {self.timeout}s",
            ) from e
        except httpx.HTTPError as e:
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} {what} request failed: {e}",
            ) from e

        if not response.is_success:
            body = response.text[:500]
            log.error(f"{self.source_name} {what} returned {response.status_code}: {body}")
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} API error {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise SourceAPIError(
                self.source_name,
                f"{self.source_name} {what} returned invalid JSON",
                status_code=response.status_code,
                body=response.text[:500],
            ) from e

        errors = self._embedded_errors(payload)
        if errors:
            log.error(f"{self.source_name} {what} embedded errors: {errors}")
            raise EmbeddedAPIError(self.source_name, errors, status_code=response.status_code)

        return payload, response


def format_date(value: Optional[datetime]) -> Optional[str]:
    """YYYY-MM-DD for date-only filters"""
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
