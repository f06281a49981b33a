"""
Typeform Sync
==============
Imports Typeform responses as forms rows plus a form_submission activity,
linking each to a contact found by email or by the contact matcher.

Answers are stored keyed by field title. Email, name, phone and company are
picked out by answer type and field title. A response without an email is
counted as no_email and not imported.

Usage:
    python scripts/sync_typeform.py                       # every form
    python scripts/sync_typeform.py --form-id abc123
    python scripts/sync_typeform.py --since 2026-01-01T00:00:00Z
    python scripts/sync_typeform.py --dry-run
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

from integrations.typeform import TypeformClient
from scripts.analytics.contact_matcher import find_best_match, meets_confidence
from scripts.lib.data_sync import (
    create_contact,
    find_contact_by_email,
    find_contact_by_name,
    merge_into_contact,
    now_iso,
    parse_datetime,
    safe_timestamp,
)
from scripts.lib.errors import APIError, DataError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import query_table, update_data_freshness, upsert_row
from scripts.lib.sync_status import sync_status
from scripts.lib.utils import batched

logger = setup_logger("typeform_sync")

BATCH_SIZE = 25
BATCH_DELAY = 0.5  # seconds between batches

NAME_TITLES = ("full name", "your name", "first name", "name")
COMPANY_TITLES = ("company", "business", "organization", "organisation")
PHONE_TITLES = ("phone", "mobile", "cell")
UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign")


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------

def answer_value(answer: Dict) -> Any:
    """The value of one answer, whatever its type."""
    kind = answer.get("type")
    if kind == "choice":
        return (answer.get("choice") or {}).get("label") or (answer.get("choice") or {}).get("other")
    if kind == "choices":
        return (answer.get("choices") or {}).get("labels") or []
    if kind == "payment":
        return (answer.get("payment") or {}).get("amount")
    return answer.get(kind)


def field_titles(form: Dict) -> Dict[str, str]:
    """field id -> title, including fields nested in groups."""
    titles: Dict[str, str] = {}

    def walk(fields):
        for f in fields or []:
            titles[f["id"]] = f.get("title") or f["id"]
            walk((f.get("properties") or {}).get("fields"))

    walk(form.get("fields"))
    return titles


def extract_answers(response: Dict, titles: Dict[str, str]) -> Dict[str, Any]:
    answers = {}
    for answer in response.get("answers") or []:
        field_id = (answer.get("field") or {}).get("id")
        answers[titles.get(field_id, field_id)] = answer_value(answer)
    return answers


def extract_contact_fields(response: Dict, titles: Dict[str, str]) -> Dict[str, Optional[str]]:
    """Email, name, phone and company from a response's answers and hidden fields."""
    fields: Dict[str, Optional[str]] = {"email": None, "name": None, "phone": None, "company": None}
    first = last = None
    for answer in response.get("answers") or []:
        kind = answer.get("type")
        title = titles.get((answer.get("field") or {}).get("id"), "").lower()
        value = answer_value(answer)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        if kind == "email" and not fields["email"]:
            fields["email"] = value.lower()
        elif kind == "phone_number" or any(t in title for t in PHONE_TITLES):
            fields["phone"] = fields["phone"] or value
        elif "last name" in title:
            last = value
        elif "first name" in title:
            first = value
        elif any(t in title for t in COMPANY_TITLES):
            fields["company"] = fields["company"] or value
        elif any(t in title for t in NAME_TITLES):
            fields["name"] = fields["name"] or value

    if not fields["name"] and (first or last):
        fields["name"] = " ".join(p for p in (first, last) if p)

    hidden = response.get("hidden") or {}
    if not fields["email"] and hidden.get("email"):
        fields["email"] = hidden["email"].strip().lower()
    if not fields["name"] and hidden.get("name"):
        fields["name"] = hidden["name"]
    return fields


def transform_response(response: Dict, form: Dict, titles: Dict[str, str],
                       contact_id: Any) -> Dict:
    """Map a Typeform response to a forms row."""
    answers = extract_answers(response, titles)
    contact_fields = extract_contact_fields(response, titles)
    landed = parse_datetime(response.get("landed_at"))
    submitted = parse_datetime(response.get("submitted_at"))
    hidden = response.get("hidden") or {}
    total_fields = len(titles)
    return {
        "typeform_response_id": response.get("response_id") or response.get("token"),
        "contact_id": contact_id,
        "form_id": form.get("id"),
        "form_name": form.get("title"),
        "submitted_at": safe_timestamp(response.get("submitted_at")),
        "answers": answers,
        "status": "completed" if submitted else "partial",
        "respondent_email": contact_fields["email"],
        "respondent_name": contact_fields["name"],
        "completion_time": int((submitted - landed).total_seconds()) if landed and submitted else None,
        "completion_percentage": round(len(answers) / total_fields * 100) if total_fields else None,
        **{key: hidden.get(key) for key in UTM_KEYS},
        "source": "typeform",
    }


def transform_submission_activity(form_row: Dict) -> Dict:
    return {
        "contact_id": form_row["contact_id"],
        "type": "form_submission",
        "source": "typeform",
        "source_id": f"typeform_{form_row['typeform_response_id']}",
        "title": f"Submitted {form_row.get('form_name') or 'Typeform'}",
        "description": "",
        "date": form_row.get("submitted_at") or now_iso(),
        "metadata": {"form_id": form_row.get("form_id")},
    }


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def match_candidates(fields: Dict) -> List[Dict]:
    candidates: List[Dict] = []
    by_name = find_contact_by_name(fields.get("name"))
    if by_name:
        candidates.append(by_name)
    if fields.get("phone"):
        candidates.extend(query_table("contacts", filters={"phone": fields["phone"]}, limit=10))
    if fields.get("company"):
        candidates.extend(query_table("contacts", filters={"company": fields["company"]}, limit=50))
    return candidates


def resolve_contact(fields: Dict) -> Dict:
    """Email match, then a medium-or-better fuzzy match, then a new contact."""
    contact = find_contact_by_email(fields.get("email"))
    if contact is None:
        result = find_best_match(fields, match_candidates(fields))
        if meets_confidence(result):
            logger.debug("Matched %s to contact %s (%s)", fields.get("email"),
                         result.contact["id"], result.reason)
            contact = result.contact
    if contact is None:
        return create_contact(fields, "typeform")
    return merge_into_contact(contact, fields, "typeform")


def import_response(response: Dict, form: Dict, titles: Dict[str, str],
                    dry_run: bool = False) -> str:
    """Import one response. Returns "synced" or "no_email"."""
    fields = extract_contact_fields(response, titles)
    if not fields["email"]:
        return "no_email"
    if dry_run:
        return "synced"
    contact = resolve_contact(fields)
    row = transform_response(response, form, titles, contact["id"])
    upsert_row("forms", row, on_conflict="typeform_response_id")
    upsert_row("activities", transform_submission_activity(row), on_conflict="source_id")
    return "synced"


def sync_typeform(client: TypeformClient = None, form_id: Optional[str] = None,
                  since: Optional[str] = None, dry_run: bool = False) -> Dict[str, int]:
    """
    Import responses for one form, or for every form on the account.

    Returns:
        {"synced", "errors", "no_email"}
    """
    client = client or TypeformClient()
    client.require_configured()
    totals = {"synced": 0, "errors": 0, "no_email": 0}

    logger.info("=" * 60)
    logger.info("Typeform sync started%s", " (DRY RUN)" if dry_run else "")
    logger.info("=" * 60)

    form_ids = [form_id] if form_id else [f["id"] for f in client.list_forms()]
    processed = 0
    for fid in form_ids:
        form = client.get_form(fid)
        titles = field_titles(form)
        responses = list(client.iter_responses(fid, since=since))
        logger.info("Form '%s': %d responses", form.get("title"), len(responses))

        for index, batch in enumerate(batched(responses, BATCH_SIZE)):
            if index:
                time.sleep(BATCH_DELAY)
            for response in batch:
                processed += 1
                try:
                    totals[import_response(response, form, titles, dry_run=dry_run)] += 1
                except (APIError, DataError) as e:
                    totals["errors"] += 1
                    logger.error("Error importing response %s: %s", response.get("token"), e)
            sync_status.update_source_status(
                "typeform", processed=processed, total=max(processed, len(responses)),
                imported=totals["synced"], errors=totals["errors"],
            )

    if not dry_run:
        update_data_freshness("typeform", totals["synced"],
                              status="ok" if not totals["errors"] else "partial")
    logger.info(
        "Typeform sync complete: %d synced, %d without email, %d errors",
        totals["synced"], totals["no_email"], totals["errors"],
    )
    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync Typeform responses into forms")
    parser.add_argument("--form-id", help="Only sync this form")
    parser.add_argument("--since", help="Only responses submitted after this ISO timestamp")
    parser.add_argument("--dry-run", action="store_true", help="Fetch without writing")
    args = parser.parse_args()
    sync_typeform(form_id=args.form_id, since=args.since, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
