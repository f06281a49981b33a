"""
Pipeline Pulse — Data Sync Helpers
===================================
Shared pieces for the Close, Calendly and Typeform sync scripts: value
coercion, batched upserts and contact find-or-create with source merging.

Usage:
    from scripts.lib.data_sync import find_or_create_contact, upsert_batched

    contact, created = find_or_create_contact(
        {"email": "a@b.com", "name": "Ada"}, source="calendly",
    )
    upsert_batched("meetings", rows, on_conflict="calendly_event_id")
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import (
    get_client,
    insert_row,
    query_table,
    update_row,
    upsert_rows,
)
from scripts.lib.utils import batched

logger = setup_logger("data_sync")

# Batch size for upserts (Supabase recommends ≤1000)
BATCH_SIZE = 500

# Contact columns a later source may fill in but never overwrite
MERGEABLE_CONTACT_FIELDS = (
    "name", "phone", "company", "title", "assigned_to", "notes",
    "source_id", "last_activity_date",
)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def safe_float(val: Any) -> Optional[float]:
    """Convert a value to float, returning None on failure."""
    if val is None or val == "":
        return None
    try:
        return float(val)
    except (ValueError, TypeError):
        return None


def safe_int(val: Any) -> Optional[int]:
    """Convert a value to int, returning None on failure."""
    if val is None or val == "":
        return None
    try:
        return int(float(val))
    except (ValueError, TypeError):
        return None


def safe_bool(val: Any) -> bool:
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    return str(val).lower() in ("true", "1", "yes")


def safe_timestamp(val: Any) -> Optional[str]:
    """Convert an ISO string or epoch (seconds or ms) to an ISO timestamp."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        if val.tzinfo is None:
            val = val.replace(tzinfo=timezone.utc)
        return val.isoformat()
    if isinstance(val, str):
        if "T" in val or "-" in val:
            return val
        try:
            val = float(val)
        except ValueError:
            return None
    if isinstance(val, (int, float)):
        try:
            ts = val / 1000 if val > 1e12 else val
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
        except (ValueError, OverflowError, OSError):
            return None
    return None


def parse_datetime(val: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or date) into an aware datetime."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    text = safe_timestamp(val)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_blank(val: Any) -> bool:
    return val is None or str(val).strip() == ""


def merge_lead_source(existing: Optional[str], source: str) -> str:
    """Add a source to a comma-separated lead_source list, keeping order."""
    parts = [p.strip() for p in (existing or "").split(",") if p.strip()]
    if source not in parts:
        parts.append(source)
    return ",".join(parts)


# ---------------------------------------------------------------------------
# Batched writes
# ---------------------------------------------------------------------------

def upsert_batched(table: str, rows: List[Dict], on_conflict: str) -> int:
    """Upsert rows in batches. Returns count of successfully upserted rows."""
    if not rows:
        return 0
    total = 0
    for batch in batched(rows, BATCH_SIZE):
        if upsert_rows(table, batch, on_conflict=on_conflict):
            total += len(batch)
        else:
            logger.warning("Batch of %d rows failed for %s", len(batch), table)
    return total


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

def find_contact_by_email(email: Optional[str]) -> Optional[Dict]:
    if is_blank(email):
        return None
    rows = query_table("contacts", filters={"email": email.strip().lower()}, limit=1)
    return rows[0] if rows else None


def find_contact_by_name(name: Optional[str]) -> Optional[Dict]:
    """Case-insensitive exact name lookup."""
    if is_blank(name):
        return None
    client = get_client()
    result = (
        client.table("contacts")
        .select("*")
        .ilike("name", name.strip())
        .order("id")
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def create_contact(fields: Dict, source: str) -> Dict:
    """Insert a new contact whose lead_source is `source`."""
    email = (fields.get("email") or "").strip().lower() or None
    row = {
        **{k: v for k, v in fields.items() if v is not None},
        "email": email,
        "lead_source": source,
        "status": fields.get("status") or "lead",
        "created_at": fields.get("created_at") or now_iso(),
        "updated_at": now_iso(),
    }
    created = insert_row("contacts", row)
    logger.debug("Created contact %s from %s", email or row.get("name"), source)
    return created


def merge_into_contact(contact: Dict, fields: Dict, source: str) -> Dict:
    """
    Add `source` to a contact's lead_source and fill its blank fields.

    Populated fields are never overwritten. Returns the merged row.
    """
    updates: Dict[str, Any] = {}
    merged_source = merge_lead_source(contact.get("lead_source"), source)
    if merged_source != contact.get("lead_source"):
        updates["lead_source"] = merged_source
    for key in MERGEABLE_CONTACT_FIELDS:
        if is_blank(contact.get(key)) and not is_blank(fields.get(key)):
            updates[key] = fields[key]

    if updates:
        updates["updated_at"] = now_iso()
        update_row("contacts", contact["id"], updates)
        contact = {**contact, **updates}
    return contact


def find_or_create_contact(fields: Dict, source: str,
                           match_by_name: bool = False) -> Tuple[Dict, bool]:
    """
    Find a contact by email (and optionally by name) or create it.

    Returns:
        (contact row, created flag)
    """
    contact = find_contact_by_email(fields.get("email"))
    if contact is None and match_by_name:
        contact = find_contact_by_name(fields.get("name"))

    if contact is None:
        return create_contact(fields, source), True
    return merge_into_contact(contact, fields, source), False
