"""
Pipeline Pulse — Data Enhancement Router
=========================================
Runs the data repairs from scripts/repair_data.py on demand.

Endpoints:
  POST /api/data-enhancement/{repair}   - inflated, cash, contracted,
                                          assignments, emails, coverage or all
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException

from models.analytics_models import RepairRequest
from scripts.lib.logger import setup_logger
from scripts.repair_data import REPAIRS, fill_missing_cash_collected, run_repairs

logger = setup_logger("data_enhancement_router")

router = APIRouter(prefix="/api/data-enhancement", tags=["data-enhancement"])


@router.post("/{repair}")
async def run_repair(repair: str, req: Optional[RepairRequest] = None):
    """Run one repair (or all) and return its summary."""
    req = req or RepairRequest()
    if repair != "all" and repair not in REPAIRS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown repair '{repair}'. Options: all, {', '.join(REPAIRS)}",
        )
    try:
        if repair == "cash" and req.ratio is not None:
            results = {"cash": fill_missing_cash_collected(ratio=req.ratio, dry_run=req.dry_run)}
        else:
            results = run_repairs([repair], dry_run=req.dry_run)
        logger.info("Repair %s done%s", repair, " (dry run)" if req.dry_run else "")
        return {"success": True, "repair": repair, "dry_run": req.dry_run, "results": results}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Repair %s failed: %s", repair, e)
        raise HTTPException(status_code=500, detail=f"Failed to run repair '{repair}'")
