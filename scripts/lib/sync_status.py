"""
Pipeline Pulse — Sync Status Tracker
=====================================
In-memory progress of the current (or last) sync run, exposed at
GET /api/sync/status. Overall progress is split across phases:
close 0-40%, calendly 40-70%, typeform 70-90%, attribution 90-100%.

Nothing here is persisted; a process restart resets the status to idle.
"""
from __future__ import annotations

import copy
import threading
import time
from typing import Any, Dict, Optional

# (offset, span) of each phase within overall progress
PHASE_WEIGHTS = {
    "close": (0, 40),
    "calendly": (40, 30),
    "typeform": (70, 20),
    "attribution": (90, 10),
}

PHASES = ("idle", "close", "calendly", "typeform", "attribution", "metrics", "completed")


def _source_block() -> Dict[str, Any]:
    return {"total": 0, "processed": 0, "imported": 0, "errors": 0, "percent_complete": 0}


def _percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(processed / total * 100))


class SyncStatusTracker:
    """Thread-safe status of one sync run at a time."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status = self._fresh()

    @staticmethod
    def _fresh() -> Dict[str, Any]:
        return {
            "in_progress": False,
            "start_time": None,
            "end_time": None,
            "close": _source_block(),
            "calendly": _source_block(),
            "typeform": _source_block(),
            "total_contacts_after_sync": 0,
            "overall_progress": 0,
            "current_phase": "idle",
            "error": None,
        }

    def reset(self) -> None:
        with self._lock:
            self._status = self._fresh()

    def _begin(self) -> None:
        self._status = self._fresh()
        self._status["in_progress"] = True
        self._status["start_time"] = time.time()
        self._status["current_phase"] = "close"

    def start_sync(self) -> Dict[str, Any]:
        with self._lock:
            self._begin()
            return copy.deepcopy(self._status)

    def try_start_sync(self) -> bool:
        """Claim the tracker for a new run. False if one is already in progress."""
        with self._lock:
            if self._status["in_progress"]:
                return False
            self._begin()
            return True

    def update_source_status(self, source: str, processed: int = 0, total: int = 0,
                             imported: int = 0, errors: int = 0) -> Dict[str, Any]:
        if source not in ("close", "calendly", "typeform"):
            raise ValueError(f"Unknown sync source: {source}")
        with self._lock:
            block = self._status[source]
            block.update(
                total=total, processed=processed, imported=imported, errors=errors,
                percent_complete=_percent(processed, total),
            )
            self._status["current_phase"] = source
            offset, span = PHASE_WEIGHTS[source]
            self._status["overall_progress"] = offset + min(
                span, round(block["percent_complete"] * span / 100)
            )
            return copy.deepcopy(self._status)

    def update_attribution_status(self, percent_complete: float) -> Dict[str, Any]:
        with self._lock:
            offset, span = PHASE_WEIGHTS["attribution"]
            self._status["current_phase"] = "attribution"
            self._status["overall_progress"] = offset + min(
                span, round(percent_complete * span / 100)
            )
            return copy.deepcopy(self._status)

    def set_phase(self, phase: str) -> None:
        if phase not in PHASES:
            raise ValueError(f"Unknown sync phase: {phase}")
        with self._lock:
            self._status["current_phase"] = phase

    def complete_sync(self, total_contacts: int = 0, error: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            self._status["in_progress"] = False
            self._status["end_time"] = time.time()
            self._status["total_contacts_after_sync"] = total_contacts
            self._status["current_phase"] = "idle" if error else "completed"
            if not error:
                self._status["overall_progress"] = 100
            self._status["error"] = error
            return copy.deepcopy(self._status)

    def get_sync_status(self) -> Dict[str, Any]:
        with self._lock:
            status = copy.deepcopy(self._status)
        if status["start_time"]:
            end = status["end_time"] or time.time()
            status["elapsed_seconds"] = round(end - status["start_time"], 1)
        return status


sync_status = SyncStatusTracker()
