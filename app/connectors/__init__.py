"""Paginated source clients for the ERP and the storefront"""
from typing import Dict, Optional

from app.config import Settings, get_settings
from app.connectors.base import (
    PaginatedSourceClient,
    Page,
    SourceError,
    SourceNotConfiguredError,
    SourceAPIError,
    EmbeddedAPIError,
)
from app.connectors.erp import ErpClient
from app.connectors.storefront import StorefrontClient

SOURCES = ("erp", "storefront")


def build_clients(settings: Optional[Settings] = None) -> Dict[str, PaginatedSourceClient]:
    """Create one client per source from settings"""
    settings = settings or get_settings()
    return {
        "erp": ErpClient(
            account_id=settings.erp_account_id,
            application_key=settings.erp_application_key,
            base_url=settings.erp_base_url,
            page_size=settings.erp_page_size,
            timeout=settings.erp_timeout_seconds,
        ),
        "storefront": StorefrontClient(
            store_url=settings.storefront_url,
            consumer_key=settings.storefront_consumer_key,
            consumer_secret=settings.storefront_consumer_secret,
            page_size=settings.storefront_page_size,
            timeout=settings.storefront_timeout_seconds,
        ),
    }


__all__ = [
    "SOURCES",
    "build_clients",
    "PaginatedSourceClient",
    "Page",
    "SourceError",
    "SourceNotConfiguredError",
    "SourceAPIError",
    "EmbeddedAPIError",
    "ErpClient",
    "StorefrontClient",
]
