"""
Close CRM Sync
===============
Pulls leads, opportunities, activities and users from Close and upserts
them into contacts, deals, activities and close_users.

A lead without any email address is skipped. Contacts merge with an
existing contact of the same email, gaining "close" in lead_source.

Usage:
    python scripts/sync_close.py                 # full sync
    python scripts/sync_close.py --users-only    # close_users only
    python scripts/sync_close.py --limit 50      # first 50 leads
    python scripts/sync_close.py --dry-run       # fetch and map, no writes
"""
from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from integrations.close import CloseClient
from scripts.lib.data_sync import (
    find_or_create_contact,
    now_iso,
    safe_float,
    safe_int,
    safe_timestamp,
    upsert_batched,
)
from scripts.lib.errors import APIError, DataError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import update_data_freshness, upsert_rows
from scripts.lib.sync_status import sync_status

logger = setup_logger("close_sync")

LEAD_DELAY = 0.1  # seconds between leads

STATUS_MAP = {
    "Lead": "lead",
    "Qualified": "qualified",
    "Opportunity": "opportunity",
    "Customer": "customer",
    "Bad Fit": "disqualified",
}

OPPORTUNITY_STATUS_MAP = {"active": "open", "won": "won", "lost": "lost"}

ACTIVITY_TYPE_MAP = {
    "Call": "call",
    "Email": "email",
    "EmailThread": "email",
    "Note": "note",
    "Meeting": "meeting",
    "TaskCompleted": "task",
    "Task": "task",
}


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def primary_email(lead: Dict) -> Optional[str]:
    """First email on any of the lead's contacts, lowercased."""
    for person in lead.get("contacts") or []:
        for entry in person.get("emails") or []:
            if entry.get("email"):
                return entry["email"].strip().lower()
    return None


def _first_contact(lead: Dict) -> Dict:
    contacts = lead.get("contacts") or []
    return contacts[0] if contacts else {}


def transform_lead(lead: Dict) -> Optional[Dict]:
    """Map a Close lead to a contacts row; None when it has no email."""
    email = primary_email(lead)
    if not email:
        return None
    person = _first_contact(lead)
    phones = person.get("phones") or []
    custom = lead.get("custom") or {}
    return {
        "name": lead.get("display_name") or person.get("name") or "Unknown",
        "email": email,
        "phone": phones[0].get("phone") if phones else None,
        "company": lead.get("name") or lead.get("company"),
        "title": person.get("title"),
        "status": STATUS_MAP.get(lead.get("status_label"), "lead"),
        "source_id": lead.get("id"),
        "assigned_to": lead.get("assigned_to") or custom.get("Lead Owner"),
        "notes": custom.get("notes") or lead.get("description"),
        "created_at": safe_timestamp(lead.get("date_created")),
        "last_activity_date": safe_timestamp(lead.get("date_updated")),
        "source_data": {"close_lead_id": lead.get("id"), "status_label": lead.get("status_label")},
    }


def opportunity_status(opportunity: Dict) -> str:
    status_type = (opportunity.get("status_type") or "").lower()
    if status_type in OPPORTUNITY_STATUS_MAP:
        return OPPORTUNITY_STATUS_MAP[status_type]
    label = (opportunity.get("status_label") or "open").lower()
    return label if label in ("open", "won", "lost") else "open"


def transform_opportunity(opportunity: Dict, contact_id: Any) -> Dict:
    """Map a Close opportunity to a deals row. Close values are in cents."""
    cents = safe_float(opportunity.get("value"))
    value = round(cents / 100, 2) if cents is not None else None
    return {
        "close_id": opportunity["id"],
        "contact_id": contact_id,
        "title": opportunity.get("note") or "Opportunity from Close",
        "value": value,
        "value_currency": opportunity.get("value_currency"),
        "value_period": opportunity.get("value_period"),
        "confidence": safe_int(opportunity.get("confidence")),
        "status": opportunity_status(opportunity),
        "status_label": opportunity.get("status_label"),
        "close_date": safe_timestamp(opportunity.get("date_won")),
        "assigned_to": opportunity.get("user_id") or opportunity.get("assigned_to"),
        "lead_name": opportunity.get("lead_name"),
        "source": "close",
        "created_at": safe_timestamp(opportunity.get("date_created")) or now_iso(),
        "updated_at": safe_timestamp(opportunity.get("date_updated")) or now_iso(),
        "metadata": {"close_data": opportunity},
    }


def transform_activity(activity: Dict, contact_id: Any) -> Dict:
    """Map a Close activity to an activities row."""
    kind = ACTIVITY_TYPE_MAP.get(activity.get("_type"), "note")
    row = {
        "contact_id": contact_id,
        "type": kind,
        "source": "close",
        "source_id": activity["id"],
        "title": activity.get("subject") or f"{activity.get('_type') or 'Activity'} from Close",
        "description": activity.get("note") or activity.get("text") or "",
        "date": safe_timestamp(activity.get("date_created")),
        "assigned_to": activity.get("user_id"),
        "metadata": {"close_type": activity.get("_type")},
    }
    if kind == "call":
        row.update(
            call_direction=activity.get("direction"),
            call_duration=safe_int(activity.get("duration")),
            call_outcome=activity.get("disposition") or activity.get("status"),
        )
    elif kind == "email":
        row.update(
            email_subject=activity.get("subject"),
            email_status=activity.get("status"),
        )
    elif kind == "task":
        row.update(
            task_status="completed" if activity.get("_type") == "TaskCompleted" else activity.get("status"),
            task_due_date=safe_timestamp(activity.get("due_date")),
        )
    return row


def transform_close_user(user: Dict) -> Dict:
    return {
        "close_id": user["id"],
        "email": (user.get("email") or "").lower() or None,
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "role": user.get("role") or user.get("title"),
        "status": "active" if user.get("is_active", True) else "inactive",
        "created_at": safe_timestamp(user.get("date_created")) or now_iso(),
    }


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def sync_close_users(client: CloseClient = None, dry_run: bool = False) -> int:
    """Upsert every Close user into close_users. Returns the count."""
    client = client or CloseClient()
    client.require_configured()
    rows = [transform_close_user(u) for u in client.list_users() if u.get("id")]
    if dry_run:
        logger.info("DRY RUN: would upsert %d Close users", len(rows))
        return len(rows)
    count = upsert_batched("close_users", rows, on_conflict="close_id")
    logger.info("Synced %d Close users", count)
    return count


def upsert_contact_from_lead(fields: Dict) -> Dict:
    contact, _ = find_or_create_contact(fields, "close")
    return contact


def sync_lead(client: CloseClient, lead: Dict, dry_run: bool = False) -> Dict[str, int]:
    """Sync one lead with its opportunities and activities."""
    counts = {"contacts": 0, "deals": 0, "activities": 0, "skipped": 0}
    fields = transform_lead(lead)
    if fields is None:
        logger.debug("Lead %s (%s) has no email, skipping", lead.get("id"), lead.get("display_name"))
        counts["skipped"] = 1
        return counts

    opportunities = client.get_lead_opportunities(lead["id"])
    activities = client.get_lead_activities(lead["id"])
    if dry_run:
        counts.update(contacts=1, deals=len(opportunities), activities=len(activities))
        return counts

    contact = upsert_contact_from_lead(fields)
    counts["contacts"] = 1
    if fields.get("assigned_to"):
        upsert_rows(
            "contact_user_assignments",
            [{"contact_id": contact["id"], "close_user_id": fields["assigned_to"]}],
            on_conflict="contact_id,close_user_id",
        )

    deals = [transform_opportunity(o, contact["id"]) for o in opportunities if o.get("id")]
    counts["deals"] = upsert_batched("deals", deals, on_conflict="close_id")

    rows = [transform_activity(a, contact["id"]) for a in activities if a.get("id")]
    counts["activities"] = upsert_batched("activities", rows, on_conflict="source_id")
    return counts


def sync_close(client: CloseClient = None, limit: Optional[int] = None,
               query: Optional[str] = None, dry_run: bool = False) -> Dict[str, int]:
    """
    Sync Close leads into the database.

    Returns:
        {"contacts", "deals", "activities", "skipped", "errors"}
    """
    client = client or CloseClient()
    client.require_configured()
    totals = {"contacts": 0, "deals": 0, "activities": 0, "skipped": 0, "errors": 0}

    logger.info("=" * 60)
    logger.info("Close sync started%s", " (DRY RUN)" if dry_run else "")
    logger.info("=" * 60)

    processed = 0
    if limit is not None and limit <= 0:
        leads = []
    else:
        leads = client.iter_leads(query=query)
    for lead in leads:
        processed += 1
        try:
            counts = sync_lead(client, lead, dry_run=dry_run)
            for key, value in counts.items():
                totals[key] += value
        except (APIError, DataError) as e:
            totals["errors"] += 1
            logger.error("Error syncing lead %s: %s", lead.get("id"), e)
        sync_status.update_source_status(
            "close", processed=processed, total=max(processed, limit or 0),
            imported=totals["contacts"], errors=totals["errors"],
        )
        # Checked after the lead so client.resume_token names the first
        # unprocessed lead.
        if limit is not None and processed >= limit:
            break
        time.sleep(LEAD_DELAY)

    if not dry_run:
        update_data_freshness("close", totals["contacts"], status="ok" if not totals["errors"] else "partial")

    logger.info(
        "Close sync complete: %d contacts, %d deals, %d activities, %d skipped, %d errors",
        totals["contacts"], totals["deals"], totals["activities"],
        totals["skipped"], totals["errors"],
    )
    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync Close CRM into the database")
    parser.add_argument("--limit", type=int, help="Stop after this many leads")
    parser.add_argument("--query", help="Close lead search query")
    parser.add_argument("--users-only", action="store_true", help="Only sync close_users")
    parser.add_argument("--dry-run", action="store_true",
                        help="Fetch and map without writing")
    args = parser.parse_args()

    sync_close_users(dry_run=args.dry_run)
    if not args.users_only:
        sync_close(limit=args.limit, query=args.query, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
