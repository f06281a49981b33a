"""
Pipeline Pulse — Attribution Router
====================================
Multi-touch attribution per contact and across all contacts.

Endpoints:
  GET  /api/attribution/enhanced-stats    - Cached stats over every contact
  GET  /api/attribution/enhanced/{id}     - Full attribution for one contact
  GET  /api/attribution/timeline/{id}     - Touchpoint timeline for one contact
  POST /api/attribution/all               - Recompute the stats (bypasses cache)
  POST /api/attribution/contact/{id}      - Recompute one contact, optional Notion export
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from models.analytics_models import AttributionContactRequest
from scripts.analytics.attribution import (
    attribute_all_contacts,
    attribute_contact,
    contact_timeline,
    export_contact_to_notion,
)
from scripts.lib.errors import ConfigError, HubError
from scripts.lib.logger import setup_logger

logger = setup_logger("attribution_router")

router = APIRouter(prefix="/api/attribution", tags=["attribution"])


@router.get("/enhanced-stats")
async def enhanced_stats(force_fresh: bool = Query(False, alias="forceFresh")):
    """Attribution stats across all contacts (cached for 30 minutes)."""
    try:
        return attribute_all_contacts(use_cache=not force_fresh)
    except Exception as e:
        logger.error("Attribution stats failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to calculate attribution stats")


@router.get("/enhanced/{contact_id}")
async def contact_attribution(contact_id: int):
    try:
        result = attribute_contact(contact_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Attribution failed for contact %s: %s", contact_id, e)
        raise HTTPException(status_code=500, detail="Failed to calculate attribution")


@router.get("/timeline/{contact_id}")
async def timeline(contact_id: int):
    try:
        result = contact_timeline(contact_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        return {"success": True, **result}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Timeline failed for contact %s: %s", contact_id, e)
        raise HTTPException(status_code=500, detail="Failed to build timeline")


@router.post("/all")
async def recompute_all():
    """Recompute attribution for every contact and refresh the cache."""
    try:
        return attribute_all_contacts(use_cache=False)
    except Exception as e:
        logger.error("Attribution recompute failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to recompute attribution")


@router.post("/contact/{contact_id}")
async def recompute_contact(contact_id: int, req: Optional[AttributionContactRequest] = None):
    """Recompute one contact; with export_to_notion, also write it to Notion."""
    req = req or AttributionContactRequest()
    try:
        result = attribute_contact(contact_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        if req.export_to_notion:
            try:
                result["notion"] = export_contact_to_notion(contact_id)
            except ConfigError as e:
                raise HTTPException(status_code=400, detail=e.message)
            except HubError as e:
                logger.error("Notion export failed for contact %s: %s", contact_id, e)
                raise HTTPException(status_code=502, detail="Notion export failed")
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Attribution failed for contact %s: %s", contact_id, e)
        raise HTTPException(status_code=500, detail="Failed to calculate attribution")
