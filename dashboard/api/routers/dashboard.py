"""
Pipeline Pulse — Dashboard Router
==================================
KPI dashboards built from synced Close, Calendly and Typeform data.

Endpoints:
  GET /api/dashboard            - KPIs, sales team, triage/lead/advanced metrics
  GET /api/enhanced-dashboard   - The above plus revenue, attribution and rep names

Query params (both endpoints):
  dateRange        YYYY-MM-DD_YYYY-MM-DD or a preset (last_30_days, this_month, ...)
  startDate/endDate  alternative to dateRange
  date             a single day
  userId           Close user id to scope to
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from models.analytics_models import DashboardResponse
from scripts.analytics.dashboard import build_dashboard, build_enhanced_dashboard
from scripts.analytics.date_range import DateRange, resolve_date_range
from scripts.lib.errors import DateRangeError
from scripts.lib.logger import setup_logger

logger = setup_logger("dashboard_router")

router = APIRouter(prefix="/api", tags=["dashboard"])


def date_range_from_params(date_range: Optional[str], start_date: Optional[str],
                           end_date: Optional[str], single_date: Optional[str]) -> DateRange:
    """Resolve the request's date params, or 400."""
    try:
        return resolve_date_range(date_range, start_date, end_date, single_date)
    except DateRangeError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    date_range: Optional[str] = Query(None, alias="dateRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    single_date: Optional[str] = Query(None, alias="date"),
    user_id: Optional[str] = Query(None, alias="userId"),
):
    """Dashboard metrics for a date range."""
    window = date_range_from_params(date_range, start_date, end_date, single_date)
    try:
        payload = build_dashboard(window, user_id=user_id)
        payload.update(success=True, timestamp=datetime.now(timezone.utc).isoformat())
        return payload
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Dashboard failed for %s: %s", window, e)
        raise HTTPException(status_code=500, detail="Failed to build dashboard")


@router.get("/enhanced-dashboard", response_model=DashboardResponse)
async def enhanced_dashboard(
    date_range: Optional[str] = Query(None, alias="dateRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    single_date: Optional[str] = Query(None, alias="date"),
    user_id: Optional[str] = Query(None, alias="userId"),
    skip_attribution: bool = Query(False, alias="skipAttribution"),
    force_fresh: bool = Query(False, alias="forceFresh"),
):
    """Dashboard with revenue calculator totals, attribution summary and rep names."""
    window = date_range_from_params(date_range, start_date, end_date, single_date)
    try:
        return build_enhanced_dashboard(
            window,
            user_id=user_id,
            skip_attribution=skip_attribution,
            force_fresh=force_fresh,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Enhanced dashboard failed for %s: %s", window, e)
        raise HTTPException(status_code=500, detail="Failed to build enhanced dashboard")
