"""
Pipeline Pulse — Dashboard Aggregation
=======================================
Builds the sales dashboard from deals, meetings, activities, contacts and
forms rows: headline KPIs against the previous period, per-rep numbers,
triage, lead and advanced metrics, and the list of meetings still missing
their intake form ("missing admins").

compute_dashboard() is pure and works on already-loaded rows;
build_dashboard() loads the rows, and build_enhanced_dashboard() layers on
the revenue calculator, attribution summary, user names and persistence.

Usage:
    from scripts.analytics.dashboard import build_enhanced_dashboard

    payload = build_enhanced_dashboard(date_range, user_id="user_abc")
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from scripts.analytics.date_range import DateRange, in_range, previous_period
from scripts.analytics.revenue import (
    RevenueCalculationMode,
    calculate_revenue_for_period,
    deal_cash_collected,
    parse_currency_value,
)
from scripts.analytics.user_resolver import ZERO_MEMBER_METRICS, user_resolver
from scripts.lib.cache import cache_service
from scripts.lib.data_sync import parse_datetime
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all, upsert_row

logger = setup_logger("dashboard")

DASHBOARD_CACHE_TTL = 600
CALL_1 = "Call 1"
CALL_2 = "Call 2"
PICKED_UP_OUTCOMES = ("answered", "connected", "completed")

KPI_KEYS = (
    "closed_deals",
    "cash_collected",
    "revenue_generated",
    "total_calls",
    "call1_taken",
    "call2_taken",
    "closing_rate",
    "avg_cash_collected",
    "solution_call_show_rate",
    "earning_per_call2",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ratio(numerator: float, denominator: float, digits: int = 2) -> float:
    return round(numerator / denominator, digits) if denominator else 0


def _percent(numerator: float, denominator: float) -> float:
    return round(numerator / denominator * 100, 1) if denominator else 0


def percent_change(current: float, previous: float) -> float:
    """Change from previous to current in percent; 100 when growing from zero."""
    if not previous:
        return 100.0 if current else 0.0
    return round((current - previous) / abs(previous) * 100, 1)


def _owned(rows: Iterable[Dict], user_id: Optional[str]) -> List[Dict]:
    if not user_id:
        return list(rows)
    return [r for r in rows if str(r.get("assigned_to") or "") == str(user_id)]


def _meetings_of_type(meetings: Iterable[Dict], meeting_type: str) -> List[Dict]:
    return [m for m in meetings if m.get("type") == meeting_type]


def _with_status(rows: Iterable[Dict], status: str) -> List[Dict]:
    return [r for r in rows if r.get("status") == status]


def _contracted(deal: Dict) -> float:
    value = deal.get("contracted_value")
    if value in (None, ""):
        value = deal.get("value")
    return parse_currency_value(value)


def _is_outbound(meeting: Dict) -> bool:
    utm = f"{meeting.get('utm_source') or ''} {meeting.get('utm_medium') or ''}".lower()
    return "outbound" in utm


def _picked_up(activity: Dict) -> bool:
    if (activity.get("call_duration") or 0) > 0:
        return True
    return (activity.get("call_outcome") or "").lower() in PICKED_UP_OUTCOMES


# ---------------------------------------------------------------------------
# Period slices
# ---------------------------------------------------------------------------

def period_rows(rows: Dict[str, List[Dict]], date_range: DateRange,
                user_id: Optional[str] = None) -> Dict[str, List[Dict]]:
    """The rows that fall in date_range, each table by its own date column."""
    deals = _owned(rows.get("deals", []), user_id)
    return {
        "won_deals": [
            d for d in deals
            if d.get("status") == "won" and in_range(d.get("close_date"), date_range)
        ],
        "meetings": [
            m for m in _owned(rows.get("meetings", []), user_id)
            if in_range(m.get("start_time"), date_range)
        ],
        "calls": [
            a for a in _owned(rows.get("activities", []), user_id)
            if a.get("type") == "call" and in_range(a.get("date"), date_range)
        ],
        "contacts": [
            c for c in _owned(rows.get("contacts", []), user_id)
            if in_range(c.get("created_at"), date_range)
        ],
    }


def calculate_kpis(period: Dict[str, List[Dict]]) -> Dict[str, float]:
    """Headline numbers for one period slice."""
    won = period["won_deals"]
    call1 = _meetings_of_type(period["meetings"], CALL_1)
    call2 = _meetings_of_type(period["meetings"], CALL_2)
    call1_taken = len(_with_status(call1, "completed"))
    call2_taken = len(_with_status(call2, "completed"))
    call2_scheduled = len([m for m in call2 if m.get("status") != "canceled"])

    cash = round(sum(deal_cash_collected(d) for d in won), 2)
    return {
        "closed_deals": len(won),
        "cash_collected": cash,
        "revenue_generated": round(sum(_contracted(d) for d in won), 2),
        "total_calls": call1_taken + call2_taken + len(period["calls"]),
        "call1_taken": call1_taken,
        "call2_taken": call2_taken,
        "closing_rate": _percent(len(won), call2_taken),
        "avg_cash_collected": _ratio(cash, len(won)),
        "solution_call_show_rate": _percent(call2_taken, call2_scheduled),
        "earning_per_call2": _ratio(cash, call2_taken),
    }


def compare_kpis(current: Dict[str, float], previous: Dict[str, float]) -> Dict[str, Dict]:
    return {
        key: {
            "current": current[key],
            "previous": previous[key],
            "change": percent_change(current[key], previous[key]),
        }
        for key in KPI_KEYS
    }


def calculate_triage_metrics(period: Dict[str, List[Dict]]) -> Dict[str, float]:
    call1 = _meetings_of_type(period["meetings"], CALL_1)
    booked = len(call1)
    canceled = len(_with_status(call1, "canceled"))
    sits = len(_with_status(call1, "completed"))
    solution_booked = len(_meetings_of_type(period["meetings"], CALL_2))
    outbound = len([m for m in call1 if _is_outbound(m)])
    direct = booked - outbound
    return {
        "booked": booked,
        "sits": sits,
        "show_rate": _percent(sits, booked - canceled),
        "cancel_rate": _percent(canceled, booked),
        "solution_booking_rate": _percent(solution_booked, sits),
        "outbound_triages_set": outbound,
        "total_direct_bookings": direct,
        "direct_booking_rate": _percent(direct, booked),
    }


def calculate_lead_metrics(period: Dict[str, List[Dict]]) -> Dict[str, float]:
    dials = [a for a in period["calls"] if (a.get("call_direction") or "").lower() == "outbound"]
    return {
        "new_leads": len(period["contacts"]),
        "disqualified": len(_with_status(period["contacts"], "disqualified")),
        "total_dials": len(dials),
        "pick_up_rate": _percent(len([a for a in dials if _picked_up(a)]), len(dials)),
    }


def sales_cycle_days(won_deals: Iterable[Dict], contacts_by_id: Dict[Any, Dict]) -> float:
    """Average days from contact creation to the deal's close date."""
    cycles = []
    for deal in won_deals:
        contact = contacts_by_id.get(deal.get("contact_id")) or {}
        created = parse_datetime(contact.get("created_at"))
        closed = parse_datetime(deal.get("close_date"))
        if created and closed and closed >= created:
            cycles.append((closed - created).total_seconds() / 86400)
    return round(sum(cycles) / len(cycles), 1) if cycles else 0


def calculate_advanced_metrics(kpis: Dict[str, float], period: Dict[str, List[Dict]],
                               contacts_by_id: Dict[Any, Dict]) -> Dict[str, float]:
    return {
        "calls_to_close": _ratio(kpis["total_calls"], kpis["closed_deals"], 1),
        "sales_cycle": sales_cycle_days(period["won_deals"], contacts_by_id),
        "solution_call_close_rate": _percent(kpis["closed_deals"], kpis["call2_taken"]),
        "profit_per_solution_call": _ratio(kpis["cash_collected"], kpis["call2_taken"]),
    }


def find_missing_admins(meetings: Iterable[Dict], form_contact_ids: set,
                        contacts_by_id: Dict[Any, Dict]) -> List[Dict]:
    """Meetings whose contact never submitted a form, grouped by assignee."""
    grouped: Dict[Any, List[Dict]] = defaultdict(list)
    for meeting in meetings:
        if meeting.get("status") == "canceled" or meeting.get("contact_id") in form_contact_ids:
            continue
        contact = contacts_by_id.get(meeting.get("contact_id")) or {}
        grouped[meeting.get("assigned_to")].append({
            "id": meeting.get("contact_id"),
            "name": contact.get("name") or meeting.get("invitee_name"),
            "email": contact.get("email") or meeting.get("invitee_email"),
            "event_type": meeting.get("type"),
            "call_date_time": meeting.get("start_time"),
        })
    admins = [
        {"assigned_to": owner, "count": len(items), "contacts": items}
        for owner, items in grouped.items()
    ]
    return sorted(admins, key=lambda a: a["count"], reverse=True)


def calculate_sales_team(period: Dict[str, List[Dict]], form_contact_ids: set) -> List[Dict]:
    """Per-rep metrics, one entry per Close user id seen in the period."""
    team: Dict[str, Dict[str, Any]] = {}

    def member(owner):
        if owner not in team:
            team[owner] = {"id": owner, "name": None, **ZERO_MEMBER_METRICS}
        return team[owner]

    for deal in period["won_deals"]:
        if deal.get("assigned_to"):
            m = member(deal["assigned_to"])
            m["closed"] += 1
            m["cash_collected"] = round(m["cash_collected"] + deal_cash_collected(deal), 2)
            m["contracted_value"] = round(m["contracted_value"] + _contracted(deal), 2)

    missing = defaultdict(int)
    for meeting in period["meetings"]:
        owner = meeting.get("assigned_to")
        if not owner or meeting.get("status") == "canceled":
            continue
        m = member(owner)
        m["meetings_scheduled"] += 1
        if meeting.get("status") == "completed":
            m["meetings_completed"] += 1
        if meeting.get("type") == CALL_1:
            m["call1"] += 1
        elif meeting.get("type") == CALL_2:
            m["call2"] += 1
            if meeting.get("status") == "completed":
                m["call2_sits"] += 1
        if meeting.get("contact_id") not in form_contact_ids:
            missing[owner] += 1

    for call in period["calls"]:
        if call.get("assigned_to"):
            member(call["assigned_to"])["calls"] += 1

    for owner, m in team.items():
        m["calls"] += m["call1"] + m["call2"]
        m["closing_rate"] = _percent(m["closed"], m["call2_sits"])
        m["admin_missing_percent"] = _percent(missing[owner], m["meetings_scheduled"])
    return sorted(team.values(), key=lambda m: m["cash_collected"], reverse=True)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def compute_dashboard(rows: Dict[str, List[Dict]], date_range: DateRange,
                      user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the dashboard payload from loaded rows.

    Args:
        rows: {"deals", "meetings", "activities", "contacts", "forms"} row lists
        date_range: the current period; the previous period has the same length
        user_id: Close user id to scope deals, meetings, calls and leads to
    """
    previous = previous_period(date_range)
    current_rows = period_rows(rows, date_range, user_id)
    previous_rows = period_rows(rows, previous, user_id)

    contacts_by_id = {c["id"]: c for c in rows.get("contacts", []) if c.get("id") is not None}
    form_contact_ids = {f.get("contact_id") for f in rows.get("forms", []) if f.get("contact_id")}

    current = calculate_kpis(current_rows)
    return {
        "date_range": date_range.to_dict(),
        "previous_range": previous.to_dict(),
        "user_id": user_id,
        "kpis": compare_kpis(current, calculate_kpis(previous_rows)),
        "sales_team": calculate_sales_team(current_rows, form_contact_ids),
        "triage_metrics": calculate_triage_metrics(current_rows),
        "lead_metrics": calculate_lead_metrics(current_rows),
        "advanced_metrics": calculate_advanced_metrics(current, current_rows, contacts_by_id),
        "missing_admins": find_missing_admins(current_rows["meetings"], form_contact_ids, contacts_by_id),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


def load_dashboard_rows(date_range: DateRange) -> Dict[str, List[Dict]]:
    """Rows covering date_range and its previous period."""
    since = previous_period(date_range).start.isoformat()
    until = date_range.end.isoformat()
    return {
        "deals": fetch_all("deals", filters={"status": "won"},
                           gte={"close_date": since}, lte={"close_date": until}),
        "meetings": fetch_all("meetings", gte={"start_time": since}, lte={"start_time": until}),
        "activities": fetch_all("activities", filters={"type": "call"},
                                gte={"date": since}, lte={"date": until}),
        "contacts": fetch_all("contacts", select="id, name, email, status, assigned_to, created_at"),
        "forms": fetch_all("forms", select="id, contact_id", not_null=["contact_id"]),
    }


def build_dashboard(date_range: DateRange, user_id: Optional[str] = None) -> Dict[str, Any]:
    return compute_dashboard(load_dashboard_rows(date_range), date_range, user_id)


def attribution_summary() -> Dict[str, Any]:
    """The dashboard's slice of the cached attribution stats."""
    from scripts.analytics.attribution import attribute_all_contacts

    stats = attribute_all_contacts(use_cache=True)
    return {
        "total_contacts": stats["total_contacts"],
        "contacts_with_deals": stats["contacts_with_deals"],
        "total_touchpoints": stats["touchpoint_stats"]["total_touchpoints"],
        "conversion_rate": stats["conversion_rate"],
        "most_effective_channel": stats["most_effective_channel"],
    }


def store_dashboard(payload: Dict[str, Any], date_range: DateRange,
                    user_id: Optional[str] = None) -> bool:
    return upsert_row("metrics", {
        "date_range": str(date_range),
        "user_id": user_id or "all",
        "data": payload,
        "generated_at": payload["generated_at"],
    }, on_conflict="date_range,user_id")


def build_enhanced_dashboard(date_range: DateRange, user_id: Optional[str] = None,
                             skip_attribution: bool = False,
                             force_fresh: bool = False) -> Dict[str, Any]:
    """
    The full dashboard: revenue from the calculator (close-date mode),
    attribution summary, resolved rep names; persisted to metrics and cached.
    """
    cache_key = f"enhanced-dashboard:{date_range}:{user_id or 'all'}:{int(skip_attribution)}"
    if not force_fresh:
        cached = cache_service.get(cache_key)
        if cached is not None:
            return cached

    dashboard = build_dashboard(date_range, user_id)

    revenue = calculate_revenue_for_period(date_range, user_id, RevenueCalculationMode.CLOSE_DATE)
    kpis = dashboard["kpis"]
    for key, value in (("revenue_generated", revenue["total_revenue"]),
                       ("cash_collected", revenue["total_cash_collected"])):
        kpis[key]["current"] = value
        kpis[key]["change"] = percent_change(value, kpis[key]["previous"])
    dashboard["revenue"] = revenue

    dashboard["attribution"] = None
    if not skip_attribution:
        try:
            dashboard["attribution"] = attribution_summary()
        except HubError as e:
            logger.warning("Attribution summary unavailable: %s", e)

    user_resolver.resolve_dashboard_users(dashboard)

    if not store_dashboard(dashboard, date_range, user_id):
        logger.warning("Could not store dashboard for %s", date_range)

    dashboard.update(
        success=True,
        timestamp=datetime.now(timezone.utc).isoformat(),
        attribution_skipped=skip_attribution,
    )
    cache_service.set(cache_key, dashboard, ttl=DASHBOARD_CACHE_TTL)
    return dashboard
