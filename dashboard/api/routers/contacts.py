"""
Pipeline Pulse — Contacts Router
=================================
Filterable contact endpoints over the merged contacts table.

Endpoints:
  GET /api/contacts            - List contacts with filters
  GET /api/contacts/search     - Search by name, email or company
  GET /api/contacts/{id}       - Single contact with deals, meetings, activities, forms
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from typing import Optional

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client

logger = setup_logger("contacts_router")

router = APIRouter(prefix="/api/contacts", tags=["contacts"])

LIST_COLUMNS = (
    "id, name, email, phone, company, title, lead_source, status, "
    "assigned_to, last_activity_date, created_at, field_coverage"
)
SORTABLE = {"created_at", "updated_at", "last_activity_date", "name", "field_coverage"}


@router.get("")
async def list_contacts(
    status: Optional[str] = Query(None, description="Filter by status"),
    lead_source: Optional[str] = Query(None, description="Filter by source (close, calendly, typeform)"),
    assigned_to: Optional[str] = Query(None, description="Filter by Close user id"),
    company: Optional[str] = Query(None, description="Filter by company name (partial match)"),
    sort: str = Query("created_at", description="Sort field"),
    order: str = Query("desc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
):
    """List contacts with filtering, sorting, and pagination."""
    if sort not in SORTABLE:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot sort by '{sort}'. Options: {', '.join(sorted(SORTABLE))}",
        )
    try:
        client = get_client()
        query = client.table("contacts").select(LIST_COLUMNS, count="exact")

        if status:
            query = query.eq("status", status)
        if lead_source:
            query = query.ilike("lead_source", f"%{lead_source}%")
        if assigned_to:
            query = query.eq("assigned_to", assigned_to)
        if company:
            query = query.ilike("company", f"%{company}%")

        desc = order.lower() == "desc"
        query = query.order(sort, desc=desc)
        query = query.range(offset, offset + limit - 1)

        result = query.execute()
        contacts = result.data or []

        return {
            "results": contacts,
            "count": len(contacts),
            "total": result.count if result.count is not None else len(contacts),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List contacts failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch contacts")


@router.get("/search")
async def search_contacts(
    q: str = Query(..., min_length=2, description="Name, email or company fragment"),
    limit: int = Query(20, ge=1, le=100),
):
    """Case-insensitive search across name, email and company."""
    term = q.strip().replace(",", " ")
    try:
        client = get_client()
        result = (
            client.table("contacts")
            .select(LIST_COLUMNS)
            .or_(f"name.ilike.%{term}%,email.ilike.%{term}%,company.ilike.%{term}%")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        contacts = result.data or []
        return {"results": contacts, "count": len(contacts), "query": q}
    except Exception as e:
        logger.error("Contact search failed for '%s': %s", q, e)
        raise HTTPException(status_code=500, detail="Failed to search contacts")


@router.get("/{contact_id}")
async def get_contact(contact_id: int):
    """Get a single contact with its deals, meetings, activities and forms."""
    try:
        client = get_client()
        result = client.table("contacts").select("*").eq("id", contact_id).limit(1).execute()
        if not result.data:
            raise HTTPException(status_code=404, detail="Contact not found")

        contact = result.data[0]

        deals = (
            client.table("deals")
            .select("id, title, value, status, close_date, cash_collected, contracted_value, assigned_to")
            .eq("contact_id", contact_id)
            .order("created_at", desc=True)
            .execute()
        ).data or []

        meetings = (
            client.table("meetings")
            .select("id, type, title, start_time, status, assigned_to")
            .eq("contact_id", contact_id)
            .order("start_time", desc=True)
            .execute()
        ).data or []

        activities = (
            client.table("activities")
            .select("id, type, title, date, source")
            .eq("contact_id", contact_id)
            .order("date", desc=True)
            .limit(50)
            .execute()
        ).data or []

        forms = (
            client.table("forms")
            .select("id, form_name, submitted_at, answers")
            .eq("contact_id", contact_id)
            .order("submitted_at", desc=True)
            .execute()
        ).data or []

        return {
            **contact,
            "deals": deals,
            "meetings": meetings,
            "recent_activities": activities,
            "forms": forms,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get contact failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch contact")
