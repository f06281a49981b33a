"""
Pipeline Pulse — Close Users Router
====================================
Sales reps synced from Close, and the contacts and deals assigned to them.

Endpoints:
  GET /api/close-users                 - List reps
  GET /api/close-users/{id}            - One rep (by row id or Close id)
  GET /api/close-users/{id}/contacts   - Contacts assigned to the rep
  GET /api/close-users/{id}/deals      - Deals assigned to the rep
"""
from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from scripts.analytics.user_resolver import display_name
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_row, query_table

logger = setup_logger("close_users_router")

router = APIRouter(prefix="/api/close-users", tags=["close-users"])


def _find_user(user_id: str) -> Dict:
    """Look a rep up by Close id ("user_...") or numeric row id, or 404."""
    if user_id.isdigit():
        user = get_row("close_users", int(user_id))
    else:
        user = get_row("close_users", user_id, column="close_id")
    if not user:
        raise HTTPException(status_code=404, detail="Close user not found")
    return {**user, "name": display_name(user)}


@router.get("")
async def list_close_users(
    status: Optional[str] = Query(None, description="active or inactive"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    try:
        filters = {"status": status} if status else None
        users = query_table(
            "close_users", filters=filters, order_by="first_name",
            desc=False, limit=limit, offset=offset,
        )
        results = [{**u, "name": display_name(u)} for u in users]
        return {"results": results, "count": len(results), "offset": offset, "limit": limit}
    except Exception as e:
        logger.error("List close users failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch Close users")


@router.get("/{user_id}")
async def get_close_user(user_id: str):
    try:
        return _find_user(user_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get close user %s failed: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch Close user")


@router.get("/{user_id}/contacts")
async def close_user_contacts(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Contacts whose assigned_to is this rep."""
    try:
        user = _find_user(user_id)
        contacts = query_table(
            "contacts", filters={"assigned_to": user["close_id"]},
            order_by="created_at", limit=limit, offset=offset,
        )
        return {"user": user, "results": contacts, "count": len(contacts),
                "offset": offset, "limit": limit}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Close user contacts failed for %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch contacts")


@router.get("/{user_id}/deals")
async def close_user_deals(
    user_id: str,
    status: Optional[str] = Query(None, description="open, won or lost"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Deals assigned to this rep."""
    try:
        user = _find_user(user_id)
        filters = {"assigned_to": user["close_id"]}
        if status:
            filters["status"] = status
        deals = query_table(
            "deals", filters=filters, order_by="created_at", limit=limit, offset=offset,
        )
        return {"user": user, "results": deals, "count": len(deals),
                "offset": offset, "limit": limit}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Close user deals failed for %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch deals")
