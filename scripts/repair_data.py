"""
Data Repairs
=============
Batch fixes for gaps the source systems leave behind: cash collected
missing or inflated on won deals, contracted value never set, deals with no
owner, and emails stored with stray case or whitespace.

Every repair accepts dry_run and returns a summary dict.

Usage:
    python scripts/repair_data.py                     # all repairs
    python scripts/repair_data.py --fix cash          # one repair
    python scripts/repair_data.py --fix all --dry-run
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from scripts.analytics.field_coverage import update_all_field_coverage
from scripts.analytics.revenue import parse_currency_value
from scripts.lib.cache import invalidate_data_caches
from scripts.lib.data_sync import is_blank, now_iso
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all, update_row, upsert_rows

logger = setup_logger("repair_data")

INFLATION_FACTOR = 2
DEFAULT_CASH_RATIO = 0.9
MIN_REPAIRED_COVERAGE = 85

# Where Close custom fields have stored cash collected over time, in order
CASH_METADATA_KEYS = (
    "cash_collected",
    "cashCollected",
    "cash_collection",
    "collected_amount",
    "payment_received",
    "payment_amount",
    "paid_amount",
    "revenue_collected",
)


def _has_amount(value: Any) -> bool:
    return not is_blank(value) and parse_currency_value(value) > 0


def _lookup_cash(data: Any) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    for key in CASH_METADATA_KEYS:
        if _has_amount(data.get(key)):
            return parse_currency_value(data[key])
    return None


def _lookup_custom_cash(custom: Any) -> Optional[float]:
    if not isinstance(custom, dict):
        return None
    names = [k.lower() for k in CASH_METADATA_KEYS]
    for key, value in custom.items():
        lowered = key.lower().replace(" ", "_")
        if any(name in lowered for name in names) and _has_amount(value):
            return parse_currency_value(value)
    return None


def find_cash_collected(deal: Dict, ratio: float = DEFAULT_CASH_RATIO) -> Tuple[Optional[float], str]:
    """
    Best available cash collected for a deal, and where it came from.

    Looks at metadata, then metadata.opportunity_data, then metadata.custom,
    then estimates ratio x value. (None, "none") when nothing is usable.
    """
    metadata = deal.get("metadata") or {}
    found = _lookup_cash(metadata)
    if found is not None:
        return found, "metadata"
    found = _lookup_cash(metadata.get("opportunity_data"))
    if found is not None:
        return found, "opportunity_data"
    found = _lookup_custom_cash(metadata.get("custom"))
    if found is not None:
        return found, "custom"
    value = parse_currency_value(deal.get("value"))
    if value > 0:
        return round(value * ratio, 2), "estimated"
    return None, "none"


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

def fix_inflated_cash_collected(dry_run: bool = False) -> Dict[str, Any]:
    """Cap cash collected at the deal value where it exceeds 2x the value."""
    deals = fetch_all("deals", filters={"status": "won"})
    fixed = 0
    for deal in deals:
        value = parse_currency_value(deal.get("value"))
        cash = parse_currency_value(deal.get("cash_collected"))
        if value > 0 and cash > value * INFLATION_FACTOR:
            logger.debug("Deal %s: cash %.2f > %dx value %.2f", deal["id"], cash, INFLATION_FACTOR, value)
            if dry_run or update_row("deals", deal["id"], {"cash_collected": value, "updated_at": now_iso()}):
                fixed += 1
    logger.info("Inflated cash collected: %d/%d won deals %s",
                fixed, len(deals), "would be fixed" if dry_run else "fixed")
    return {"checked": len(deals), "updated": fixed, "dry_run": dry_run}


def fill_missing_cash_collected(ratio: float = DEFAULT_CASH_RATIO,
                                dry_run: bool = False) -> Dict[str, Any]:
    """Fill cash collected on won deals that have none."""
    if not 0 < ratio <= 1:
        raise ValueError(f"ratio must be in (0, 1], got {ratio}")

    deals = fetch_all("deals", filters={"status": "won"})
    by_source = {"metadata": 0, "opportunity_data": 0, "custom": 0, "estimated": 0}
    updated = skipped = 0
    for deal in deals:
        if _has_amount(deal.get("cash_collected")):
            continue
        cash, source = find_cash_collected(deal, ratio=ratio)
        if cash is None:
            skipped += 1
            continue
        values = {
            "cash_collected": cash,
            "field_coverage": max(deal.get("field_coverage") or 0, MIN_REPAIRED_COVERAGE),
            "updated_at": now_iso(),
        }
        if dry_run or update_row("deals", deal["id"], values):
            updated += 1
            by_source[source] += 1

    logger.info("Missing cash collected: %d deals filled %s, %d skipped (no value)",
                updated, by_source, skipped)
    return {"checked": len(deals), "updated": updated, "skipped": skipped,
            "by_source": by_source, "dry_run": dry_run}


def fill_missing_contracted_value(dry_run: bool = False) -> Dict[str, Any]:
    """Copy the deal value into contracted_value where it is missing."""
    deals = fetch_all("deals", is_null=["contracted_value"])
    updated = 0
    for deal in deals:
        if is_blank(deal.get("value")):
            continue
        if dry_run or update_row("deals", deal["id"], {"contracted_value": deal["value"]}):
            updated += 1
    logger.info("Contracted value: %d/%d deals %s", updated, len(deals),
                "would be filled" if dry_run else "filled")
    return {"checked": len(deals), "updated": updated, "dry_run": dry_run}


def fix_deal_user_assignments(dry_run: bool = False) -> Dict[str, Any]:
    """Give unowned deals their contact's owner and sync deal_user_assignments."""
    deals = fetch_all("deals")
    contacts = {c["id"]: c for c in fetch_all("contacts", select="id, assigned_to")}

    updated = failed = 0
    assignments = []
    for deal in deals:
        owner = deal.get("assigned_to")
        if not owner:
            owner = (contacts.get(deal.get("contact_id")) or {}).get("assigned_to")
            if not owner:
                continue
            if not dry_run and not update_row("deals", deal["id"], {"assigned_to": owner}):
                failed += 1
                continue
            updated += 1
        assignments.append({"deal_id": deal["id"], "close_user_id": owner})

    if assignments and not dry_run:
        upsert_rows("deal_user_assignments", assignments, on_conflict="deal_id,close_user_id")
    logger.info("Deal assignments: %d deals given an owner, %d failed, %d assignment rows",
                updated, failed, len(assignments))
    return {"checked": len(deals), "updated": updated, "failed": failed,
            "assignments": len(assignments), "dry_run": dry_run}


def normalize_contact_emails(dry_run: bool = False) -> Dict[str, Any]:
    """Lowercase and trim contact emails, leaving collisions alone."""
    contacts = fetch_all("contacts", select="id, email", not_null=["email"])
    taken = {c["email"] for c in contacts}
    updated = conflicts = 0
    for contact in contacts:
        email = contact["email"]
        normalized = email.strip().lower()
        if normalized == email:
            continue
        if normalized in taken:
            conflicts += 1
            logger.warning("Contact %s: %s already exists, not normalizing", contact["id"], normalized)
            continue
        if dry_run or update_row("contacts", contact["id"], {"email": normalized}):
            taken.add(normalized)
            updated += 1
    logger.info("Emails: %d normalized, %d conflicts", updated, conflicts)
    return {"checked": len(contacts), "updated": updated, "conflicts": conflicts, "dry_run": dry_run}


def recalculate_field_coverage(dry_run: bool = False) -> Dict[str, Any]:
    tables = update_all_field_coverage(dry_run=dry_run)
    return {"updated": sum(tables.values()), "tables": tables, "dry_run": dry_run}


REPAIRS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "inflated": fix_inflated_cash_collected,
    "cash": fill_missing_cash_collected,
    "contracted": fill_missing_contracted_value,
    "assignments": fix_deal_user_assignments,
    "emails": normalize_contact_emails,
    "coverage": recalculate_field_coverage,
}


def run_repairs(names=None, dry_run: bool = False) -> Dict[str, Dict[str, Any]]:
    """Run the named repairs (all by default) in order."""
    selected = list(REPAIRS) if not names or "all" in names else list(names)
    unknown = [n for n in selected if n not in REPAIRS]
    if unknown:
        raise ValueError(f"Unknown repair(s): {', '.join(unknown)}. Options: {', '.join(REPAIRS)}")

    results = {}
    for name in REPAIRS:
        if name in selected:
            logger.info("Running repair: %s%s", name, " (DRY RUN)" if dry_run else "")
            results[name] = REPAIRS[name](dry_run=dry_run)
    if not dry_run:
        invalidate_data_caches()
    return results


def main() -> None:
    parser = argparse.ArgumentParser(description="Repair gaps in synced data")
    parser.add_argument("--fix", choices=["all", *REPAIRS], default="all",
                        help="Which repair to run (default: all)")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("  Data repairs: %s", args.fix)
    logger.info("=" * 60)
    results = run_repairs([args.fix], dry_run=args.dry_run)
    for name, summary in results.items():
        logger.info("  %-12s %s", name, summary)


if __name__ == "__main__":
    main()
