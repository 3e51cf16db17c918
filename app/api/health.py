"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from app.config import get_settings
from app import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Which sources are configured and whether the scheduler is running"""
    from app.scheduler import scheduler

    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "sources": {
            "erp": bool(settings.erp_account_id and settings.erp_application_key),
            "storefront": bool(
                settings.storefront_url
                and settings.storefront_consumer_key
                and settings.storefront_consumer_secret
            ),
        },
        "scheduler_running": scheduler.running,
        "timestamp": datetime.utcnow().isoformat()
    }
