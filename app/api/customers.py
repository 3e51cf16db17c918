"""
Customers API

Reconciled customer list and detail, plus the merged order list.
"""
from fastapi import APIRouter, Depends, Query, HTTPException
from sqlalchemy.orm import Session
from typing import Optional

from app.models.base import get_db
from app.services.customer_query_service import CustomerQueryService

router = APIRouter(prefix="/customers", tags=["customers"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("")
async def list_customers(
    search: Optional[str] = Query(None, description="Name, email, phone or company"),
    source: Optional[str] = Query(None, description="erp, storefront or both"),
    segment: Optional[str] = Query(None, description="vip, active, dormant, new or marketable"),
    sort_by: str = Query("total_spent", description="total_spent, total_orders, last_order_date or name"),
    sort_dir: str = Query("desc", description="asc or desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Unified customers from both sources, with stats over the whole filtered set."""
    service = CustomerQueryService(db)
    try:
        data = service.list_customers(
            search=search,
            source=source,
            segment=segment,
            sort_by=sort_by,
            sort_dir=sort_dir,
            page=page,
            limit=limit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, **data}


@router.get("/{key}")
async def get_customer(key: str, db: Session = Depends(get_db)):
    """One customer (by matching key) with orders from both sources."""
    data = CustomerQueryService(db).get_customer(key)
    if not data:
        raise HTTPException(status_code=404, detail="Customer not found")
    return {"success": True, "data": data}


@orders_router.get("")
async def list_orders(
    search: Optional[str] = Query(None, description="Order number, customer or tracking number"),
    source: Optional[str] = Query(None, description="erp or storefront"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Orders from both sources, newest first."""
    try:
        data = CustomerQueryService(db).list_orders(search=search, source=source, page=page, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, **data}
