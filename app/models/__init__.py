"""Database models for the omnichannel sync cache"""

from app.models.erp import ErpCustomer, ErpOrder

from app.models.storefront import StorefrontCustomer, StorefrontOrder

from app.models.sync import SyncRun, SourceSyncState, CustomerSegmentSettings

__all__ = [
    "ErpCustomer",
    "ErpOrder",
    "StorefrontCustomer",
    "StorefrontOrder",
    "SyncRun",
    "SourceSyncState",
    "CustomerSegmentSettings",
]
