"""
Sync bookkeeping models

Audit trail of sync runs, the per-source schedule state, and the
thresholds used to segment customers.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Text
from datetime import datetime

from app.models.base import Base


class SyncRun(Base):
    """
    One sync of one entity for one source

    Created as 'started', finalized once as 'completed' or 'failed'.
    """
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)

    source = Column(String, index=True, nullable=False)  # erp, storefront
    entity = Column(String, index=True, nullable=False)  # customers, orders
    mode = Column(String, default="full")  # full, incremental
    status = Column(String, index=True, default="started")  # started, completed, failed

    records_synced = Column(Integer, default=0)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncRun {self.source}/{self.entity} {self.status}>"


class SourceSyncState(Base):
    """
    Schedule and freshness state for one source
    """
    __tablename__ = "source_sync_state"

    id = Column(Integer, primary_key=True, index=True)

    source = Column(String, unique=True, index=True, nullable=False)
    sync_frequency = Column(String, default="1hour")  # 15min, 1hour, 6hours, daily, manual
    is_enabled = Column(Boolean, default=True)

    last_sync_at = Column(DateTime, nullable=True)  # Last run where something succeeded
    last_attempt_at = Column(DateTime, nullable=True)
    last_status = Column(String, nullable=True)  # success, partial, failed
    last_error = Column(Text, nullable=True)

    orders_cached = Column(Integer, default=0)
    customers_cached = Column(Integer, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CustomerSegmentSettings(Base):
    """
    Segment thresholds (single row, defaults apply when absent)
    """
    __tablename__ = "customer_segment_settings"

    id = Column(Integer, primary_key=True, index=True)

    vip_min_orders = Column(Integer, default=5)
    vip_min_spend = Column(Numeric(12, 2), default=5000)
    dormant_months = Column(Integer, default=12)
    active_min_orders = Column(Integer, default=2)
    active_months = Column(Integer, default=6)
    new_days = Column(Integer, default=30)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
