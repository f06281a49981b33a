"""
Calendly Sync
==============
Imports scheduled Calendly events as meetings, creating or merging the
invitee's contact and assigning each meeting to the Close user who hosted it.

Periods fetched:
    recent       the last month onwards (always)
    1-3 months   with --historical
    3-6 months   with --historical

Usage:
    python scripts/sync_calendly.py                  # last month
    python scripts/sync_calendly.py --historical     # last six months
    python scripts/sync_calendly.py --limit 20       # stop after 20 imports
    python scripts/sync_calendly.py --dry-run
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from integrations.calendly import CalendlyClient, uuid_from_uri
from scripts.analytics.user_resolver import user_resolver
from scripts.lib.data_sync import (
    find_or_create_contact,
    now_iso,
    parse_datetime,
    safe_bool,
    safe_timestamp,
)
from scripts.lib.errors import APIError, DataError, DataFetchError, SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_row, insert_row, update_data_freshness, update_row
from scripts.lib.sync_status import sync_status

logger = setup_logger("calendly_sync")

DELETED_HOST_DOMAIN = "deleted.calendly.com"

# Checked in order; the first keyword found in the event name wins
MEETING_TYPE_KEYWORDS: List[Tuple[Tuple[str, ...], str]] = [
    (("intro", "triage"), "Call 1"),
    (("solution",), "Call 2"),
    (("next step",), "Call 3"),
    (("orientation",), "Orientation"),
    (("mentor", "mentee"), "Mentoring"),
]
DEFAULT_MEETING_TYPE = "Call 1"


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def determine_meeting_type(name: Optional[str]) -> str:
    lowered = (name or "").lower()
    for keywords, meeting_type in MEETING_TYPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return meeting_type
    return DEFAULT_MEETING_TYPE


def determine_assigned_user(host_email: Optional[str],
                            users: Optional[Iterable[Dict]] = None) -> Optional[str]:
    """Close user id of the Calendly host, matched by email then local part."""
    if not host_email or host_email.lower().endswith(DELETED_HOST_DOMAIN):
        return None
    users = list(users if users is not None else user_resolver.get_all_users())
    target = host_email.strip().lower()
    for user in users:
        if (user.get("email") or "").lower() == target:
            return user.get("close_id")
    local = target.split("@", 1)[0]
    for user in users:
        if (user.get("email") or "").lower().split("@", 1)[0] == local:
            return user.get("close_id")
    return None


def sync_periods(historical: bool = False,
                 now: Optional[datetime] = None) -> List[Tuple[str, str, Optional[str]]]:
    """(label, min_start, max_start) windows to fetch, newest first."""
    now = now or datetime.now(timezone.utc)
    periods = [("recent", (now - timedelta(days=30)).isoformat(), None)]
    if historical:
        periods.append((
            "1-3 months",
            (now - timedelta(days=90)).isoformat(),
            (now - timedelta(days=30)).isoformat(),
        ))
        periods.append((
            "3-6 months",
            (now - timedelta(days=180)).isoformat(),
            (now - timedelta(days=90)).isoformat(),
        ))
    return periods


def meeting_status(event: Dict, invitee: Dict, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if event.get("status") == "canceled" or invitee.get("status") == "canceled":
        return "canceled"
    if invitee.get("no_show"):
        return "no_show"
    end = parse_datetime(event.get("end_time"))
    if end and end < now:
        return "completed"
    return "scheduled"


def duration_minutes(event: Dict) -> Optional[int]:
    start, end = parse_datetime(event.get("start_time")), parse_datetime(event.get("end_time"))
    if not start or not end:
        return None
    return int((end - start).total_seconds() // 60)


def host_email(event: Dict) -> Optional[str]:
    memberships = event.get("event_memberships") or []
    return memberships[0].get("user_email") if memberships else None


def transform_invitee(invitee: Dict) -> Dict:
    """Contact fields from a Calendly invitee."""
    email = (invitee.get("email") or "").strip().lower() or None
    name = invitee.get("name") or " ".join(
        p for p in (invitee.get("first_name"), invitee.get("last_name")) if p
    )
    return {
        "name": name or (email.split("@")[0] if email else None),
        "email": email,
        "phone": invitee.get("text_reminder_number"),
        "source_id": invitee.get("uri"),
        "created_at": safe_timestamp(invitee.get("created_at")),
    }


def transform_event(event: Dict, invitee: Dict, contact_id: Any,
                    assigned_to: Optional[str]) -> Dict:
    """Map an event plus its invitee to a meetings row."""
    if not event.get("uri") or not event.get("start_time"):
        raise SchemaValidationError("Calendly event is missing uri or start_time", field="start_time")
    location = event.get("location") or {}
    tracking = invitee.get("tracking") or {}
    cancellation = invitee.get("cancellation") or {}
    return {
        "calendly_event_id": uuid_from_uri(event.get("uri")),
        "contact_id": contact_id,
        "type": determine_meeting_type(event.get("name")),
        "title": event.get("name") or "Calendly Meeting",
        "start_time": safe_timestamp(event.get("start_time")),
        "end_time": safe_timestamp(event.get("end_time")),
        "duration": duration_minutes(event),
        "status": meeting_status(event, invitee),
        "assigned_to": assigned_to,
        "invitee_email": (invitee.get("email") or "").lower() or None,
        "invitee_name": invitee.get("name"),
        "assignee_email": host_email(event),
        "location": location.get("location") or location.get("type"),
        "conference_url": location.get("join_url"),
        "rescheduled": safe_bool(invitee.get("rescheduled")),
        "canceled_at": safe_timestamp(cancellation.get("created_at")),
        "utm_source": tracking.get("utm_source"),
        "utm_medium": tracking.get("utm_medium"),
        "utm_campaign": tracking.get("utm_campaign"),
        "source": "calendly",
        "created_at": safe_timestamp(event.get("created_at")) or now_iso(),
        "metadata": {"event_uri": event.get("uri"), "event_type": event.get("event_type")},
    }


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def resolve_contact(fields: Dict) -> Dict:
    """Email match, then name match, then a new calendly contact."""
    contact, created = find_or_create_contact(fields, "calendly", match_by_name=True)
    if created:
        logger.debug("Created contact %s from Calendly", contact.get("email"))
    return contact


def refreshed_fields(stored: Dict, event: Dict, invitee: Dict) -> Dict:
    """Status columns that changed on Calendly since the meeting was stored."""
    cancellation = invitee.get("cancellation") or {}
    current = {
        "status": meeting_status(event, invitee),
        "end_time": safe_timestamp(event.get("end_time")),
        "canceled_at": safe_timestamp(cancellation.get("created_at")),
    }
    if not current["canceled_at"]:
        current.pop("canceled_at")
    return {k: v for k, v in current.items() if v != stored.get(k)}


def import_event(client: CalendlyClient, event: Dict, users: List[Dict],
                 dry_run: bool = False) -> str:
    """
    Import one event as a meeting, or refresh the status of a stored one.

    Returns:
        "imported", "updated" or "skipped"
    """
    event_id = uuid_from_uri(event.get("uri"))
    stored = get_row("meetings", event_id, column="calendly_event_id")
    invitees = [i for i in client.get_invitees(event["uri"]) if i.get("email")]

    if stored:
        changes = refreshed_fields(stored, event, invitees[0] if invitees else {})
        if not changes:
            return "skipped"
        if not dry_run and not update_row("meetings", event_id, changes, column="calendly_event_id"):
            raise DataFetchError(f"Could not refresh meeting {event_id}", source="meetings")
        logger.debug("Meeting %s refreshed: %s", event_id, changes)
        return "updated"

    if not invitees:
        logger.debug("Event %s has no invitee with an email", event_id)
        return "skipped"
    invitee = invitees[0]

    if dry_run:
        return "imported"
    contact = resolve_contact(transform_invitee(invitee))
    assigned_to = determine_assigned_user(host_email(event), users)
    insert_row("meetings", transform_event(event, invitee, contact["id"], assigned_to))
    return "imported"


def sync_calendly(client: CalendlyClient = None, historical: bool = False,
                  limit: Optional[int] = None, dry_run: bool = False) -> Dict[str, int]:
    """
    Import Calendly events as meetings.

    Returns:
        {"total_events", "imported", "updated", "skipped", "errors"}
    """
    client = client or CalendlyClient()
    client.require_configured()
    users = user_resolver.get_all_users()
    totals = {"total_events": 0, "imported": 0, "updated": 0, "skipped": 0, "errors": 0}

    logger.info("=" * 60)
    logger.info("Calendly sync started (%s)%s",
                "historical" if historical else "recent",
                " DRY RUN" if dry_run else "")
    logger.info("=" * 60)

    for label, min_start, max_start in sync_periods(historical):
        if limit is not None and totals["imported"] >= limit:
            break
        logger.info("Fetching %s events", label)
        for event in client.iter_events(min_start=min_start, max_start=max_start, status=None):
            if limit is not None and totals["imported"] >= limit:
                break
            totals["total_events"] += 1
            try:
                outcome = import_event(client, event, users, dry_run=dry_run)
                totals[outcome] += 1
            except (APIError, DataError) as e:
                totals["errors"] += 1
                logger.error("Error importing event %s: %s", event.get("uri"), e)
            sync_status.update_source_status(
                "calendly", processed=totals["total_events"],
                total=max(totals["total_events"], limit or 0),
                imported=totals["imported"], errors=totals["errors"],
            )

    if not dry_run:
        update_data_freshness("calendly", totals["imported"],
                              status="ok" if not totals["errors"] else "partial")
    logger.info(
        "Calendly sync complete: %d events, %d imported, %d updated, %d skipped, %d errors",
        totals["total_events"], totals["imported"], totals["updated"],
        totals["skipped"], totals["errors"],
    )
    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync Calendly events into meetings")
    parser.add_argument("--historical", action="store_true",
                        help="Also fetch events from one to six months back")
    parser.add_argument("--limit", type=int, help="Stop after this many imports")
    parser.add_argument("--dry-run", action="store_true", help="Fetch without writing")
    args = parser.parse_args()
    sync_calendly(historical=args.historical, limit=args.limit, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
