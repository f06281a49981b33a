"""
Pipeline Pulse — Field Coverage
================================
Weighted percentage of populated columns per record, plus the database-wide
coverage report behind /api/field-coverage-report.

A field counts as populated when it is not None and its string form is not
blank. Required and optional fields carry different weights per entity;
activities are a plain percentage over base plus type-specific fields.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional

from scripts.lib.data_sync import is_blank
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all, update_row
from scripts.lib.utils import round_half_up

logger = setup_logger("field_coverage")

REQUIRED_COMPLETE_THRESHOLD = 70

COVERAGE_CONFIG: Dict[str, Dict[str, Any]] = {
    "contact": {
        "table": "contacts",
        "required": [
            "name", "email", "phone", "company", "title", "lead_source", "created_at",
        ],
        "optional": [
            "address", "city", "state", "zipcode", "country", "linkedin_url",
            "twitter_handle", "secondary_email", "secondary_phone", "utm_source",
            "utm_medium", "utm_campaign", "referral_source", "timezone", "language",
            "lead_score", "qualification_status", "lead_temperature", "first_touch_date",
        ],
        "weights": (0.7, 0.3),
    },
    "deal": {
        "table": "deals",
        "required": [
            "contact_id", "title", "value", "status", "source", "close_id", "created_at",
        ],
        "optional": [
            "confidence", "cash_collected", "contracted_value", "value_period",
            "value_currency", "lead_name", "status_label",
        ],
        "weights": (0.8, 0.2),
    },
    "meeting": {
        "table": "meetings",
        "required": [
            "contact_id", "type", "status", "start_time", "source", "calendly_event_id",
        ],
        "optional": [
            "duration", "invitee_email", "invitee_name", "assignee_email", "location",
            "conference_url", "rescheduled", "canceled_at", "utm_source", "utm_medium",
            "utm_campaign",
        ],
        "weights": (0.7, 0.3),
    },
    "form": {
        "table": "forms",
        "required": [
            "contact_id", "form_name", "status", "submitted_at", "source",
            "typeform_response_id",
        ],
        "optional": [
            "form_id", "respondent_email", "respondent_name", "completion_time",
            "completion_percentage", "utm_source", "utm_medium", "utm_campaign",
        ],
        "weights": (0.7, 0.3),
    },
    "activity": {
        "table": "activities",
        "required": ["contact_id", "type", "source", "source_id", "date"],
        "optional": [],
        "by_type": {
            "call": ["call_direction", "call_duration", "call_outcome"],
            "email": ["email_subject", "email_status"],
            "task": ["task_status", "task_due_date"],
        },
    },
}

# Share of each table in overall_coverage; an empty table scores 0
REPORT_WEIGHTS = {
    "contacts": 0.3,
    "activities": 0.2,
    "deals": 0.3,
    "meetings": 0.15,
    "forms": 0.05,
}


def _filled(row: Dict, fields: List[str]) -> int:
    return sum(1 for f in fields if not is_blank(row.get(f)))


def _weighted(row: Dict, cfg: Dict[str, Any]) -> int:
    required, optional = cfg["required"], cfg["optional"]
    req_weight, opt_weight = cfg["weights"]
    score = _filled(row, required) / len(required) * req_weight * 100
    if optional:
        score += _filled(row, optional) / len(optional) * opt_weight * 100
    return round_half_up(score)


def calculate_contact_coverage(contact: Dict) -> int:
    return _weighted(contact, COVERAGE_CONFIG["contact"])


def calculate_deal_coverage(deal: Dict) -> int:
    return _weighted(deal, COVERAGE_CONFIG["deal"])


def calculate_meeting_coverage(meeting: Dict) -> int:
    return _weighted(meeting, COVERAGE_CONFIG["meeting"])


def calculate_form_coverage(form: Dict) -> int:
    return _weighted(form, COVERAGE_CONFIG["form"])


def activity_fields(activity: Dict) -> List[str]:
    cfg = COVERAGE_CONFIG["activity"]
    return cfg["required"] + cfg["by_type"].get(activity.get("type"), [])


def calculate_activity_coverage(activity: Dict) -> int:
    fields = activity_fields(activity)
    return round_half_up(_filled(activity, fields) / len(fields) * 100)


_CALCULATORS = {
    "contact": calculate_contact_coverage,
    "deal": calculate_deal_coverage,
    "meeting": calculate_meeting_coverage,
    "form": calculate_form_coverage,
    "activity": calculate_activity_coverage,
}


def calculate_field_coverage(entity_type: str, row: Dict) -> int:
    """Coverage percentage (0-100) for a row of the given entity type."""
    try:
        calculator = _CALCULATORS[entity_type]
    except KeyError:
        raise ValueError(
            f"Unknown entity type '{entity_type}'. Options: {', '.join(_CALCULATORS)}"
        )
    return calculator(row)


def missing_required_fields(entity_type: str, row: Dict) -> List[str]:
    if entity_type == "activity":
        fields = activity_fields(row)
    else:
        fields = COVERAGE_CONFIG[entity_type]["required"]
    return [f for f in fields if is_blank(row.get(f))]


def update_table_coverage(entity_type: str, dry_run: bool = False) -> int:
    """Rescore every row of one table; only changed rows are written back."""
    table = COVERAGE_CONFIG[entity_type]["table"]
    rows = fetch_all(table)
    updated = 0
    for row in rows:
        coverage = calculate_field_coverage(entity_type, row)
        values: Dict[str, Any] = {}
        if row.get("field_coverage") != coverage:
            values["field_coverage"] = coverage
        if entity_type == "contact":
            complete = coverage >= REQUIRED_COMPLETE_THRESHOLD
            if row.get("required_fields_complete") != complete:
                values["required_fields_complete"] = complete
        if not values:
            continue
        if dry_run or update_row(table, row["id"], values):
            updated += 1
    logger.info(
        "%s coverage: %d/%d rows %s", table, updated, len(rows),
        "would change" if dry_run else "updated",
    )
    return updated


def update_all_field_coverage(dry_run: bool = False) -> Dict[str, int]:
    """Rescore all tables. Returns {table: updated_count}."""
    return {
        COVERAGE_CONFIG[entity]["table"]: update_table_coverage(entity, dry_run=dry_run)
        for entity in ("contact", "deal", "meeting", "form", "activity")
    }


def summarize_coverage(entity_type: str, rows: List[Dict], lowest: int = 5) -> Dict[str, Any]:
    """Average coverage, completeness and per-field fill rates for a set of rows."""
    cfg = COVERAGE_CONFIG[entity_type]
    if entity_type == "activity":
        fields = sorted({f for row in rows for f in activity_fields(row)}) or cfg["required"]
    else:
        fields = cfg["required"] + cfg["optional"]

    total = len(rows)
    if not total:
        return {
            "records": 0,
            "average_coverage": 0,
            "required_complete_percent": 0,
            "field_fill_rates": {f: 0 for f in fields},
            "least_filled_fields": [],
        }

    scores = [calculate_field_coverage(entity_type, row) for row in rows]
    complete = sum(1 for row in rows if not missing_required_fields(entity_type, row))
    filled: Counter = Counter()
    for row in rows:
        for f in fields:
            if not is_blank(row.get(f)):
                filled[f] += 1
    fill_rates = {f: round(filled[f] / total * 100, 1) for f in fields}

    return {
        "records": total,
        "average_coverage": round(sum(scores) / total, 1),
        "required_complete_percent": round(complete / total * 100, 1),
        "field_fill_rates": fill_rates,
        "least_filled_fields": sorted(fill_rates, key=fill_rates.get)[:lowest],
    }


def field_coverage_report(tables: Optional[Dict[str, List[Dict]]] = None) -> Dict[str, Any]:
    """
    Build the coverage report for every entity table.

    Args:
        tables: Optional preloaded {table: rows}; missing tables are fetched.
    """
    tables = tables or {}
    report: Dict[str, Any] = {}
    for entity, cfg in COVERAGE_CONFIG.items():
        rows = tables.get(cfg["table"])
        if rows is None:
            rows = fetch_all(cfg["table"])
        report[cfg["table"]] = summarize_coverage(entity, rows)

    overall = round(sum(
        REPORT_WEIGHTS[table] * summary["average_coverage"] for table, summary in report.items()
    ), 1)
    return {"overall_coverage": overall, "tables": report}
