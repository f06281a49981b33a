"""
Pipeline Pulse — Sync Router
=============================
Triggers the source syncs in the background and reports their progress.

Endpoints:
  POST /api/sync/all           - Every step of the sync orchestrator
  POST /api/sync/close         - Close leads, deals, activities
  POST /api/sync/close-users   - Close users only
  POST /api/sync/calendly      - Calendly meetings
  POST /api/sync/typeform      - Typeform responses
  GET  /api/sync/status        - Live progress of the current/last run
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException

from models.analytics_models import SyncRequest, SyncTriggerResponse
from scripts.lib.logger import setup_logger
from scripts.lib.sync_status import sync_status
from scripts.sync_all import STEP_KEYS, run_sync

logger = setup_logger("sync_router")

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _client_for(source: str):
    if source == "calendly":
        from integrations.calendly import CalendlyClient
        return CalendlyClient()
    if source == "typeform":
        from integrations.typeform import TypeformClient
        return TypeformClient()
    from integrations.close import CloseClient
    return CloseClient()


def _run_in_background(only: Optional[List[str]], options: SyncRequest) -> None:
    try:
        result = run_sync(
            skip=options.skip, only=only, dry_run=options.dry_run,
            historical=options.historical, limit=options.limit, trigger="api",
        )
        logger.info("API-triggered sync finished: %s", result["status"])
    except Exception as e:
        logger.error("API-triggered sync crashed: %s", e)
        sync_status.complete_sync(error=str(e))
    finally:
        # Release the claim taken in _trigger if the run never did
        if sync_status.get_sync_status()["in_progress"]:
            sync_status.complete_sync()


def _trigger(source: str, only: Optional[List[str]], options: Optional[SyncRequest],
             background_tasks: BackgroundTasks) -> SyncTriggerResponse:
    options = options or SyncRequest()
    unknown = [s for s in options.skip if s not in STEP_KEYS]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown step(s): {', '.join(unknown)}. Options: {', '.join(STEP_KEYS)}",
        )
    if only:
        client = _client_for(source)
        if not client.is_configured:
            raise HTTPException(status_code=400, detail=f"{client.NAME} is not configured")
    if not sync_status.try_start_sync():
        raise HTTPException(status_code=409, detail="A sync is already in progress")

    background_tasks.add_task(_run_in_background, only, options)
    logger.info("Queued %s sync (dry_run=%s)", source, options.dry_run)
    return SyncTriggerResponse(message=f"{source} sync started", source=source)


@router.post("/all", response_model=SyncTriggerResponse, status_code=202)
async def sync_all(background_tasks: BackgroundTasks, options: Optional[SyncRequest] = None):
    return _trigger("all", None, options, background_tasks)


@router.post("/close", response_model=SyncTriggerResponse, status_code=202)
async def sync_close(background_tasks: BackgroundTasks, options: Optional[SyncRequest] = None):
    return _trigger("close", ["close"], options, background_tasks)


@router.post("/close-users", response_model=SyncTriggerResponse, status_code=202)
async def sync_close_users(background_tasks: BackgroundTasks, options: Optional[SyncRequest] = None):
    return _trigger("close-users", ["close_users"], options, background_tasks)


@router.post("/calendly", response_model=SyncTriggerResponse, status_code=202)
async def sync_calendly(background_tasks: BackgroundTasks, options: Optional[SyncRequest] = None):
    return _trigger("calendly", ["calendly"], options, background_tasks)


@router.post("/typeform", response_model=SyncTriggerResponse, status_code=202)
async def sync_typeform(background_tasks: BackgroundTasks, options: Optional[SyncRequest] = None):
    return _trigger("typeform", ["typeform"], options, background_tasks)


@router.get("/status")
async def sync_state():
    """Progress of the current or last sync run."""
    return {"success": True, **sync_status.get_sync_status()}
