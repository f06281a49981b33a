"""
Pipeline Pulse — Sync Orchestrator
===================================
Runs every sync and post-processing step in order, with step tracking, the
live sync status behind /api/sync/status, and run logging to sync_runs.

Steps:
    1. Close users
    2. Close leads, deals, activities
    3. Calendly meetings
    4. Typeform responses
    5. Attribution refresh
    6. Field coverage
    7. Data repairs

A failed step is logged and the run continues.

Usage:
    python scripts/sync_all.py                         # everything
    python scripts/sync_all.py --skip calendly typeform
    python scripts/sync_all.py --historical            # six months of Calendly
    python scripts/sync_all.py --dry-run               # log steps without executing
"""
from __future__ import annotations

import argparse
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from scripts.lib.cache import invalidate_data_caches
from scripts.lib.errors import HubError, SyncError, SyncStepError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import count_rows, insert_row, update_row
from scripts.lib.sync_status import sync_status

logger = setup_logger("sync_all")


# ---------------------------------------------------------------------------
# Step definitions
# ---------------------------------------------------------------------------
def _close_users(options: Dict) -> Any:
    from scripts.sync_close import sync_close_users
    return {"users": sync_close_users()}


def _close(options: Dict) -> Any:
    from scripts.sync_close import sync_close
    return sync_close(limit=options.get("limit"))


def _calendly(options: Dict) -> Any:
    from scripts.sync_calendly import sync_calendly
    return sync_calendly(historical=options.get("historical", False), limit=options.get("limit"))


def _typeform(options: Dict) -> Any:
    from scripts.sync_typeform import sync_typeform
    return sync_typeform()


def _attribution(options: Dict) -> Any:
    from scripts.analytics.attribution import attribute_all_contacts
    sync_status.update_attribution_status(0)
    stats = attribute_all_contacts(use_cache=False)
    sync_status.update_attribution_status(100)
    return {"total_contacts": stats["total_contacts"],
            "average_certainty": stats["average_certainty"]}


def _coverage(options: Dict) -> Any:
    from scripts.analytics.field_coverage import update_all_field_coverage
    sync_status.set_phase("metrics")
    return update_all_field_coverage()


def _repairs(options: Dict) -> Any:
    from scripts.repair_data import run_repairs
    return {name: summary.get("updated", 0)
            for name, summary in run_repairs(["inflated", "cash", "contracted", "assignments"]).items()}


# (key, display name, runner)
SYNC_STEPS: List[Tuple[str, str, Callable[[Dict], Any]]] = [
    ("close_users", "Sync Close users", _close_users),
    ("close", "Sync Close", _close),
    ("calendly", "Sync Calendly", _calendly),
    ("typeform", "Sync Typeform", _typeform),
    ("attribution", "Refresh attribution", _attribution),
    ("coverage", "Field coverage", _coverage),
    ("repairs", "Data repairs", _repairs),
]

STEP_KEYS = [key for key, _, _ in SYNC_STEPS]


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------
def run_step(key: str, name: str, runner: Callable[[Dict], Any],
             options: Dict, dry_run: bool = False) -> Dict[str, Any]:
    """Run one step and return its result dict. A failing step is recorded, never raised."""
    if dry_run:
        logger.info("[DRY RUN] Would execute: %s", name)
        return {"name": name, "step": key, "status": "skipped",
                "duration_ms": 0, "error": None, "result": None}

    logger.info("Running: %s", name)
    start = time.time()
    try:
        result = runner(options)
        duration = time.time() - start
        logger.info("%s completed in %.1fs", name, duration)
        return {"name": name, "step": key, "status": "success",
                "duration_ms": round(duration * 1000), "error": None, "result": result}
    except Exception as e:
        duration = time.time() - start
        failure = e if isinstance(e, SyncStepError) else SyncStepError(name, e)
        if isinstance(e, (HubError, ValueError)):
            logger.warning("%s in %.1fs (continuing)", failure.message, duration)
        else:
            logger.exception("Unexpected error in %s (continuing)", name)
        return {"name": name, "step": key, "status": "failed",
                "duration_ms": round(duration * 1000), "error": failure.message, "result": None}


# ---------------------------------------------------------------------------
# Run tracking (Supabase)
# ---------------------------------------------------------------------------
def create_sync_run(trigger: str = "manual") -> Optional[int]:
    """Create a sync_runs record and return its ID."""
    try:
        row = insert_row("sync_runs", {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "status": "running",
            "trigger": trigger,
            "steps": [],
        })
        run_id = row.get("id")
        logger.info("Sync run created: #%s", run_id)
        return run_id
    except HubError as e:
        logger.warning("Failed to create sync run record: %s", e)
        return None


def update_sync_run(run_id: Optional[int], status: str, steps: List[dict],
                    duration_ms: int, error_log: Optional[str] = None) -> None:
    if run_id is None:
        return
    record_counts = {s["step"]: s["result"] for s in steps if s.get("result") is not None}
    update_row("sync_runs", run_id, {
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "steps": [{k: v for k, v in s.items() if k != "result"} for s in steps],
        "record_counts": record_counts,
        "duration_ms": duration_ms,
        "error_log": error_log,
    })
    logger.info("Sync run #%s updated: %s", run_id, status)


def run_sync(skip: Optional[List[str]] = None, only: Optional[List[str]] = None,
             dry_run: bool = False, historical: bool = False,
             limit: Optional[int] = None, trigger: str = "manual") -> Dict[str, Any]:
    """
    Run the sync steps in order.

    Returns:
        {"status", "steps", "duration_ms", "run_id", "total_contacts"}
    """
    skip = set(skip or [])
    unknown = (skip | set(only or [])) - set(STEP_KEYS)
    if unknown:
        raise SyncError(f"Unknown sync step(s): {', '.join(sorted(unknown))}", code="UNKNOWN_STEP")
    options = {"historical": historical, "limit": limit}

    logger.info("=" * 60)
    logger.info("  PIPELINE PULSE — Sync")
    logger.info("=" * 60)
    if dry_run:
        logger.info("  Mode: DRY RUN")

    run_start = time.time()
    run_id = None if dry_run else create_sync_run(trigger)
    sync_status.start_sync()

    steps = []
    status = "failed"
    errors = ""
    total_contacts = 0
    try:
        for key, name, runner in SYNC_STEPS:
            if key in skip or (only and key not in only):
                continue
            steps.append(run_step(key, name, runner, options, dry_run=dry_run))

        successful = sum(1 for s in steps if s["status"] == "success")
        failed = sum(1 for s in steps if s["status"] == "failed")
        if failed == 0:
            status = "success"
        elif successful:
            status = "partial"
        errors = "\n".join(s["error"] for s in steps if s["error"])

        if not dry_run:
            try:
                total_contacts = count_rows("contacts")
            except HubError as e:
                logger.warning("Could not count contacts: %s", e)
    except Exception as e:
        status = "failed"
        errors = "\n".join(filter(None, [errors, f"Sync aborted: {e!r}"]))
        raise
    finally:
        elapsed = time.time() - run_start
        sync_status.complete_sync(total_contacts=total_contacts,
                                  error=(errors or None) if status == "failed" else None)
        update_sync_run(run_id, status, steps, round(elapsed * 1000), errors or None)
        if not dry_run:
            invalidate_data_caches()

    successful = sum(1 for s in steps if s["status"] == "success")
    failed = sum(1 for s in steps if s["status"] == "failed")
    skipped = sum(1 for s in steps if s["status"] == "skipped")

    logger.info("=" * 60)
    logger.info("  Sync Complete")
    logger.info("  Total steps: %d", len(steps))
    logger.info("  Successful:  %d", successful)
    logger.info("  Failed:      %d", failed)
    if skipped:
        logger.info("  Skipped:     %d", skipped)
    logger.info("  Duration:    %.1fs", elapsed)
    logger.info("=" * 60)

    return {
        "status": status,
        "run_id": run_id,
        "steps": steps,
        "duration_ms": round(elapsed * 1000),
        "total_contacts": total_contacts,
    }


def main():
    parser = argparse.ArgumentParser(description="Pipeline Pulse sync orchestrator")
    parser.add_argument("--skip", nargs="+", choices=STEP_KEYS, default=[],
                        help="Steps to skip")
    parser.add_argument("--historical", action="store_true",
                        help="Fetch six months of Calendly events")
    parser.add_argument("--limit", type=int, help="Cap records per source (testing)")
    parser.add_argument("--dry-run", action="store_true", help="Log steps without executing")
    args = parser.parse_args()

    result = run_sync(skip=args.skip, dry_run=args.dry_run,
                      historical=args.historical, limit=args.limit)
    sys.exit(0 if result["status"] != "failed" else 1)


if __name__ == "__main__":
    main()
