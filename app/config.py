"""
Configuration management for the omnichannel sync service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Omnichannel Sync"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"
    log_retention_days: int = 30

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./omnichannel.db"

    # ERP (Cin7 Core / DEAR Inventory)
    erp_base_url: str = "https://inventory.dearsystems.com/ExternalApi/v2"
    erp_account_id: str = ""
    erp_application_key: str = ""
    erp_page_size: int = 250  # Provider hard cap
    erp_timeout_seconds: float = 30.0

    # Storefront (WooCommerce REST v3)
    storefront_url: str = ""  # e.g. "https://shop.example.com"
    storefront_consumer_key: str = ""
    storefront_consumer_secret: str = ""
    storefront_page_size: int = 100  # WooCommerce per_page max
    storefront_timeout_seconds: float = 30.0

    # Bulk fetching
    sync_max_pages: int = 400  # Safety cap per entity fetch
    sync_concurrency: int = 3  # Page requests in flight per batch
    sync_batch_delay_seconds: float = 0.2
    sync_incremental_window_days: int = 30

    # ERP sale details (lines, email, invoice payments): one request per sale
    erp_fetch_sale_details: bool = True
    erp_detail_concurrency: int = 5
    erp_detail_batch_delay_seconds: float = 0.5

    # Scheduling
    sync_default_frequency: str = "1hour"  # 15min, 1hour, 6hours, daily, manual
    sync_check_interval_minutes: int = 15
    enable_scheduler: bool = True
    cron_secret: Optional[str] = None  # Bearer token for /cron/data-sync

    # Storage
    upsert_batch_size: int = 500
    read_page_size: int = 1000  # Rows per range read

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
