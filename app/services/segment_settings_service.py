"""
Segment settings persistence

One stored row of thresholds; defaults apply until someone saves one.
"""
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.models.sync import CustomerSegmentSettings
from app.services.segmentation import SegmentSettings
from app.utils.logger import log

FIELDS = (
    "vip_min_orders",
    "vip_min_spend",
    "dormant_months",
    "active_min_orders",
    "active_months",
    "new_days",
)


def _from_row(row: CustomerSegmentSettings) -> SegmentSettings:
    defaults = SegmentSettings()
    return SegmentSettings(
        vip_min_orders=row.vip_min_orders if row.vip_min_orders is not None else defaults.vip_min_orders,
        vip_min_spend=Decimal(str(row.vip_min_spend)) if row.vip_min_spend is not None else defaults.vip_min_spend,
        dormant_months=row.dormant_months if row.dormant_months is not None else defaults.dormant_months,
        active_min_orders=row.active_min_orders if row.active_min_orders is not None else defaults.active_min_orders,
        active_months=row.active_months if row.active_months is not None else defaults.active_months,
        new_days=row.new_days if row.new_days is not None else defaults.new_days,
    )


def get_segment_settings(db: Session) -> SegmentSettings:
    row = db.query(CustomerSegmentSettings).order_by(CustomerSegmentSettings.id).first()
    if row is None:
        return SegmentSettings()
    return _from_row(row)


def update_segment_settings(db: Session, values: Dict[str, Any]) -> SegmentSettings:
    """
    Save new thresholds (partial updates allowed)

    Raises:
        ValueError: unknown field or negative value
    """
    unknown = set(values) - set(FIELDS)
    if unknown:
        raise ValueError(f"Unknown segment settings: {', '.join(sorted(unknown))}")
    for name, value in values.items():
        if value is None:
            continue
        if Decimal(str(value)) < 0:
            raise ValueError(f"{name} must not be negative")

    row = db.query(CustomerSegmentSettings).order_by(CustomerSegmentSettings.id).first()
    if row is None:
        defaults = SegmentSettings()
        row = CustomerSegmentSettings(**{name: getattr(defaults, name) for name in FIELDS})
        db.add(row)

    for name, value in values.items():
        if value is None:
            continue
        setattr(row, name, Decimal(str(value)) if name == "vip_min_spend" else int(value))

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    log.info(f"Segment settings updated: {values}")
    return _from_row(row)
