"""
Pipeline Pulse — API Pydantic Models
=====================================

Request bodies for the sync, attribution, repair and cache endpoints, and
the response shapes the dashboard frontend relies on.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ─── Sync ───────────────────────────────────────────────────

class SyncRequest(BaseModel):
    """Options for a sync trigger."""
    limit: Optional[int] = Field(None, ge=1, description="Cap records per source")
    historical: bool = False
    dry_run: bool = False
    skip: List[str] = Field(default_factory=list)


class SyncTriggerResponse(BaseModel):
    success: bool = True
    message: str
    source: str


# ─── Attribution ────────────────────────────────────────────

class AttributionContactRequest(BaseModel):
    """Re-run attribution for one contact, optionally exporting to Notion."""
    export_to_notion: bool = False


# ─── Repairs ────────────────────────────────────────────────

class RepairRequest(BaseModel):
    dry_run: bool = False
    ratio: Optional[float] = Field(
        None, gt=0, le=1, description="Cash/value ratio for estimated cash collected",
    )


# ─── Cache ──────────────────────────────────────────────────

class CacheClearRequest(BaseModel):
    prefix: Optional[str] = None


# ─── Dashboard ──────────────────────────────────────────────

class KPIValue(BaseModel):
    """A KPI in the current and previous period."""
    current: float = 0
    previous: float = 0
    change: float = 0


class SalesTeamMember(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    closed: int = 0
    cash_collected: float = 0
    contracted_value: float = 0
    calls: int = 0
    call1: int = 0
    call2: int = 0
    call2_sits: int = 0
    closing_rate: float = 0
    admin_missing_percent: float = 0


class DashboardResponse(BaseModel):
    """The enhanced dashboard payload."""
    success: bool = True
    date_range: Dict[str, str]
    previous_range: Optional[Dict[str, str]] = None
    user_id: Optional[str] = None
    kpis: Dict[str, KPIValue]
    sales_team: List[SalesTeamMember] = Field(default_factory=list)
    triage_metrics: Dict[str, float] = Field(default_factory=dict)
    lead_metrics: Dict[str, float] = Field(default_factory=dict)
    advanced_metrics: Dict[str, float] = Field(default_factory=dict)
    missing_admins: List[Dict[str, Any]] = Field(default_factory=list)
    revenue: Optional[Dict[str, Any]] = None
    attribution: Optional[Dict[str, Any]] = None
    attribution_skipped: bool = False
    generated_at: Optional[str] = None
    timestamp: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
