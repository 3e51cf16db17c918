"""
Settings endpoints
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.models.base import get_db
from app.services.segment_settings_service import get_segment_settings, update_segment_settings
from app.services.segmentation import SEGMENT_DEFINITIONS

router = APIRouter(prefix="/settings", tags=["settings"])


class SegmentSettingsUpdate(BaseModel):
    vip_min_orders: Optional[int] = Field(None, ge=0)
    vip_min_spend: Optional[Decimal] = Field(None, ge=0)
    dormant_months: Optional[int] = Field(None, ge=0)
    active_min_orders: Optional[int] = Field(None, ge=0)
    active_months: Optional[int] = Field(None, ge=0)
    new_days: Optional[int] = Field(None, ge=0)


@router.get("/customer-segments")
async def get_customer_segments(db: Session = Depends(get_db)):
    """Current segment thresholds (defaults when never saved)"""
    return {
        "success": True,
        "data": get_segment_settings(db).to_dict(),
        "definitions": SEGMENT_DEFINITIONS,
    }


@router.put("/customer-segments")
async def put_customer_segments(body: SegmentSettingsUpdate, db: Session = Depends(get_db)):
    """Save segment thresholds; omitted fields keep their value"""
    values = body.model_dump(exclude_none=True)
    try:
        settings = update_segment_settings(db, values)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "data": settings.to_dict()}
