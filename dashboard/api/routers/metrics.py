"""
Pipeline Pulse — Metrics Router
================================
Revenue totals, data-quality reports and cache administration.

Endpoints:
  GET  /api/metrics                 - Revenue calculator for a date range
  GET  /api/metrics/freshness       - Last sync per source
  GET  /api/field-coverage-report   - Field coverage per table
  GET  /api/database-health         - Row counts, gaps, freshness, last sync run
  GET  /api/cache/stats             - TTL cache statistics
  POST /api/cache/clear             - Clear the cache (optionally by prefix)
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from dashboard.api.routers.dashboard import date_range_from_params
from models.analytics_models import CacheClearRequest
from scripts.analytics.field_coverage import field_coverage_report
from scripts.analytics.revenue import RevenueCalculationMode, calculate_revenue_for_period
from scripts.lib.cache import cache_service
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import count_rows, query_table

logger = setup_logger("metrics_router")

router = APIRouter(prefix="/api", tags=["metrics"])

HEALTH_TABLES = ("contacts", "deals", "meetings", "activities", "forms", "close_users")


@router.get("/metrics")
async def revenue_metrics(
    date_range: Optional[str] = Query(None, alias="dateRange"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    single_date: Optional[str] = Query(None, alias="date"),
    user_id: Optional[str] = Query(None, alias="userId"),
    mode: RevenueCalculationMode = Query(RevenueCalculationMode.CLOSE_DATE),
):
    """Revenue and cash collected for the range, bucketed by mode."""
    window = date_range_from_params(date_range, start_date, end_date, single_date)
    try:
        return {"success": True, **calculate_revenue_for_period(window, user_id, mode)}
    except Exception as e:
        logger.error("Revenue metrics failed for %s: %s", window, e)
        raise HTTPException(status_code=500, detail="Failed to calculate revenue")


@router.get("/metrics/freshness")
async def data_freshness():
    """Data freshness status per source."""
    try:
        rows = query_table("data_freshness", order_by="updated_at", desc=True)
        return {"sources": rows}
    except Exception as e:
        logger.error("Data freshness query failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch freshness data")


@router.get("/field-coverage-report")
async def coverage_report():
    """Average coverage, required-field completeness and fill rates per table."""
    try:
        return {"success": True, **field_coverage_report()}
    except Exception as e:
        logger.error("Field coverage report failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to build field coverage report")


@router.get("/database-health")
async def database_health():
    """Row counts plus the gaps the repair scripts exist to close."""
    try:
        counts = {table: count_rows(table) for table in HEALTH_TABLES}
        gaps = {
            "won_deals_missing_cash": count_rows(
                "deals", filters={"status": "won"}, is_null=["cash_collected"]),
            "deals_missing_contracted_value": count_rows("deals", is_null=["contracted_value"]),
            "deals_unassigned": count_rows("deals", is_null=["assigned_to"]),
            "meetings_unassigned": count_rows("meetings", is_null=["assigned_to"]),
            "contacts_missing_email": count_rows("contacts", is_null=["email"]),
        }
        runs = query_table("sync_runs", order_by="started_at", desc=True, limit=1)
        freshness = query_table("data_freshness", order_by="updated_at", desc=True)

        status = "healthy"
        if not counts["contacts"]:
            status = "empty"
        elif any(gaps.values()):
            status = "needs_repair"

        return {
            "success": True,
            "status": status,
            "table_counts": counts,
            "gaps": gaps,
            "last_sync_run": runs[0] if runs else None,
            "data_freshness": freshness,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to check database health")


@router.get("/cache/stats")
async def cache_stats():
    return {"success": True, **cache_service.stats()}


@router.post("/cache/clear")
async def cache_clear(req: Optional[CacheClearRequest] = None):
    prefix = req.prefix if req else None
    cleared = cache_service.clear(prefix=prefix)
    logger.info("Cache cleared: %d keys (prefix=%s)", cleared, prefix)
    return {"success": True, "cleared": cleared, "prefix": prefix}
