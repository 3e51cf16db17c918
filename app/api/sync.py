"""
Data synchronization endpoints
"""
import secrets
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import Settings, get_settings
from app.connectors import SOURCES
from app.services.sync_orchestrator import SyncMode, SyncOrchestrator
from app.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])
cron_router = APIRouter(prefix="/cron", tags=["sync"])

# In-memory status of background syncs
_sync_status = {}

# Lazy-init so importing the app doesn't build HTTP clients
_orchestrator = None


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator


def _update_sync_status(key: str, status: str, result=None, error=None):
    _sync_status[key] = {
        "status": status,
        "started_at": _sync_status.get(key, {}).get("started_at", datetime.utcnow().isoformat()),
        "updated_at": datetime.utcnow().isoformat(),
        "result": result,
        "error": error,
    }


class SyncRequest(BaseModel):
    entity: Optional[Literal["customers", "orders"]] = None
    mode: SyncMode = SyncMode.FULL


class SourceSettingsUpdate(BaseModel):
    sync_frequency: Optional[str] = None
    is_enabled: Optional[bool] = None


def _sources_for(source: str):
    if source == "all":
        return list(SOURCES)
    if source not in SOURCES:
        raise HTTPException(status_code=400, detail=f"Unknown source '{source}'")
    return [source]


async def _run_sync(orchestrator: SyncOrchestrator, key: str, sources, entities, mode: SyncMode):
    """Background task: run a sync and keep its outcome for /sync/progress"""
    _update_sync_status(key, "running")
    try:
        report = await orchestrator.sync_all(mode, sources=sources, entities=entities)
        _update_sync_status(key, report.verdict.value, result=report.to_dict())
    except Exception as e:
        log.error(f"Background sync {key} error: {str(e)}")
        _update_sync_status(key, "failed", error=str(e))


@router.get("/status")
async def get_sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Last run, last record count and cached row count per source and entity"""
    return {"success": True, "data": orchestrator.get_status()}


@router.get("/progress")
async def get_sync_progress():
    """Status of syncs started with background=true"""
    return {"success": True, "data": _sync_status}


@router.get("/runs")
async def list_sync_runs(
    source: Optional[str] = Query(None, description="erp or storefront"),
    entity: Optional[str] = Query(None, description="customers or orders"),
    limit: int = Query(50, ge=1, le=500),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Sync history, newest first"""
    runs = orchestrator.list_runs(source=source, entity=entity, limit=limit)
    return {"success": True, "count": len(runs), "data": runs}


@router.get("/settings")
async def get_sync_settings(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Frequency and enabled flag per source"""
    data = {source: orchestrator.load_state(source).to_dict() for source in orchestrator.clients}
    return {"success": True, "data": data}


@router.put("/settings/{source}")
async def update_sync_settings(
    source: str,
    body: SourceSettingsUpdate,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Change a source's sync frequency or switch it off"""
    _sources_for(source)
    if source == "all":
        raise HTTPException(status_code=400, detail="Settings are per source")
    try:
        state = orchestrator.update_source_settings(
            source, frequency=body.sync_frequency, is_enabled=body.is_enabled
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "data": state.to_dict()}


@router.post("/{source}")
async def trigger_sync(
    source: str,
    background_tasks: BackgroundTasks,
    body: Optional[SyncRequest] = None,
    background: bool = Query(False, description="Return immediately and poll /sync/progress"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Sync one source ('erp', 'storefront') or 'all'

    Responds 200 when everything synced, 207 when some entities failed
    and 500 when nothing did. The body always carries per-entity results.
    """
    body = body or SyncRequest()
    sources = _sources_for(source)
    entities = [body.entity] if body.entity else None

    if background:
        key = f"{source}:{body.entity or 'all'}"
        _update_sync_status(key, "started")
        background_tasks.add_task(_run_sync, orchestrator, key, sources, entities, body.mode)
        return JSONResponse(
            status_code=202,
            content={"message": "Sync started in background", "key": key, "check_progress": "/sync/progress"},
        )

    report = await orchestrator.sync_all(body.mode, sources=sources, entities=entities)
    verdict = report.verdict
    return JSONResponse(
        status_code=verdict.http_status,
        content={"success": verdict.value == "success", "data": report.to_dict()},
    )


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    """Bearer-token gate for the scheduler webhook"""
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@cron_router.api_route("/data-sync", methods=["GET", "POST"], dependencies=[Depends(verify_cron_secret)])
async def cron_data_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Incremental sync of every source that is due, for external cron triggers"""
    outcome = await orchestrator.run_due_syncs()
    status_code = outcome.report.verdict.http_status if outcome.report else 200
    return JSONResponse(
        status_code=status_code,
        content={"success": status_code == 200, "data": outcome.to_dict()},
    )
