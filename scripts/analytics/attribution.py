"""
Pipeline Pulse — Multi-Touch Attribution
=========================================
Contact-level attribution across Close activities, Calendly meetings and
Typeform submissions.

For each contact the touchpoints are sorted into a timeline, a model is
picked from the shape of the journey (first-touch, linear, U or W shaped)
and every deal gets an attribution chain: per-touchpoint weights, channel
influence and a certainty score. attribute_all_contacts() rolls this up into
the stats behind /api/attribution/enhanced-stats.

Usage:
    from scripts.analytics.attribution import attribute_contact, attribute_all_contacts

    result = attribute_contact(42)
    stats = attribute_all_contacts()
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from scripts.analytics.revenue import parse_currency_value
from scripts.lib.cache import cache_service
from scripts.lib.data_sync import parse_datetime
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all, get_row

logger = setup_logger("attribution")

ATTRIBUTION_CACHE_KEY = "attribution-stats"
ATTRIBUTION_CACHE_TTL = 1800
HIGH_CERTAINTY = 0.9
MAX_CERTAINTY = 0.98
NO_TOUCHPOINT_CERTAINTY = 0.5
MAX_INFLUENCE = 0.9

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AttributionModel(str, Enum):
    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"
    U_SHAPED = "u_shaped"
    W_SHAPED = "w_shaped"
    MULTI_TOUCH = "multi_touch"


MODEL_WEIGHTS: Dict[AttributionModel, Dict[str, float]] = {
    AttributionModel.FIRST_TOUCH: {"first": 1.0, "middle": 0.0, "last": 0.0},
    AttributionModel.LAST_TOUCH: {"first": 0.0, "middle": 0.0, "last": 1.0},
    AttributionModel.LINEAR: {"first": 0.33, "middle": 0.34, "last": 0.33},
    AttributionModel.U_SHAPED: {"first": 0.4, "middle": 0.2, "last": 0.4},
    AttributionModel.W_SHAPED: {"first": 0.3, "middle": 0.4, "last": 0.3},
    AttributionModel.MULTI_TOUCH: {"first": 0.25, "middle": 0.5, "last": 0.25},
}

CHANNEL_INFLUENCE = {
    "calendly": 0.85,
    "close": 0.75,
    "typeform": 0.6,
    "default": 0.5,
}

# Certainty contribution per touchpoint, scaled by channel influence
SIGNAL_PER_TYPE = {"meeting": 0.05, "activity": 0.03, "form_submission": 0.02}

KNOWN_SOURCES = ("close", "calendly", "typeform")


def _influence(source: Optional[str]) -> float:
    return CHANNEL_INFLUENCE.get(source or "", CHANNEL_INFLUENCE["default"])


def _sort_key(touchpoint: Dict) -> datetime:
    return parse_datetime(touchpoint.get("date")) or _EPOCH


# ---------------------------------------------------------------------------
# Touchpoints
# ---------------------------------------------------------------------------

def build_touchpoints(
    meetings: Iterable[Dict] = (),
    activities: Iterable[Dict] = (),
    forms: Iterable[Dict] = (),
) -> List[Dict]:
    """Merge a contact's meetings, activities and forms into a dated timeline."""
    touchpoints = []
    for m in meetings:
        touchpoints.append({
            "id": f"meeting_{m['id']}",
            "type": "meeting",
            "source": m.get("source") or "calendly",
            "date": m.get("start_time") or m.get("created_at"),
            "source_id": m.get("calendly_event_id"),
            "data": {"title": m.get("title"), "meeting_type": m.get("type"),
                     "duration": m.get("duration")},
        })
    for a in activities:
        # Form submissions are represented by their forms row
        if a.get("type") == "form_submission":
            continue
        touchpoints.append({
            "id": f"activity_{a['id']}",
            "type": "activity",
            "source": a.get("source") or "close",
            "date": a.get("date") or a.get("created_at"),
            "source_id": a.get("source_id"),
            "data": {"activity_type": a.get("type"), "title": a.get("title")},
        })
    for f in forms:
        touchpoints.append({
            "id": f"form_{f['id']}",
            "type": "form_submission",
            "source": f.get("source") or "typeform",
            "date": f.get("submitted_at"),
            "source_id": f.get("typeform_response_id"),
            "data": {"form_name": f.get("form_name")},
        })
    touchpoints.sort(key=_sort_key)
    return touchpoints


def lead_sources(contact: Dict) -> List[str]:
    """Known platforms named in a contact's comma-separated lead_source."""
    raw = (contact.get("lead_source") or "").lower().split(",")
    return [s for s in KNOWN_SOURCES if any(s in part for part in raw)]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def certainty_factors(contact: Dict, touchpoints: List[Dict]) -> Dict[str, float]:
    factors = {
        "base_certainty": 0.7,
        "data_completeness": 0.05,
        "channel_diversity": 0.05,
        "timeline_clarity": 0.05,
        "touchpoint_signal": 0.0,
        "cross_platform_confirmation": 0.05,
    }

    if contact.get("name") and contact.get("email"):
        factors["data_completeness"] += 0.05
    if contact.get("last_activity_date"):
        factors["data_completeness"] += 0.05
    if contact.get("company") and contact.get("title"):
        factors["data_completeness"] += 0.05
    if contact.get("notes"):
        factors["data_completeness"] += 0.05

    sources = {t["source"] for t in touchpoints}
    if len(sources) >= 2:
        factors["channel_diversity"] = 0.2
    elif len(sources) == 1:
        factors["channel_diversity"] = 0.1

    if len(touchpoints) >= 5:
        factors["timeline_clarity"] = 0.2
    elif len(touchpoints) >= 2:
        factors["timeline_clarity"] = 0.1 + (len(touchpoints) - 2) * 0.03

    signal = sum(
        _influence(t["source"]) * SIGNAL_PER_TYPE.get(t["type"], 0.02) for t in touchpoints
    )
    factors["touchpoint_signal"] = min(0.2, signal)

    platform_count = len(lead_sources(contact))
    if platform_count >= 3:
        factors["cross_platform_confirmation"] = 0.2
    elif platform_count == 2:
        factors["cross_platform_confirmation"] = 0.15

    return {k: round(v, 4) for k, v in factors.items()}


def calculate_certainty(contact: Dict, touchpoints: List[Dict]) -> float:
    return round(min(MAX_CERTAINTY, sum(certainty_factors(contact, touchpoints).values())), 4)


def determine_model(touchpoints: List[Dict]) -> AttributionModel:
    if len(touchpoints) <= 1:
        return AttributionModel.FIRST_TOUCH
    types = Counter(t["type"] for t in touchpoints)
    if types["meeting"] and types["activity"]:
        return AttributionModel.W_SHAPED
    if len(touchpoints) >= 3:
        return AttributionModel.U_SHAPED
    return AttributionModel.LINEAR


def touchpoint_weights(touchpoints: List[Dict], model: AttributionModel) -> Dict[str, float]:
    if not touchpoints:
        return {}
    if len(touchpoints) == 1:
        return {touchpoints[0]["id"]: 1.0}

    weights = MODEL_WEIGHTS[model]
    result = {touchpoints[0]["id"]: weights["first"]}
    middle = touchpoints[1:-1]
    for t in middle:
        result[t["id"]] = round(weights["middle"] / len(middle), 4)
    result[touchpoints[-1]["id"]] = weights["last"]
    return result


def channel_influence(touchpoints: List[Dict]) -> Dict[str, Dict[str, float]]:
    """Count and strength per touchpoint type, e.g. {"meeting": {...}}."""
    total = len(touchpoints)
    counts = Counter(t["type"] for t in touchpoints)
    channel_for_type = {"meeting": "calendly", "activity": "close", "form_submission": "typeform"}
    return {
        kind: {
            "count": count,
            "strength": round(min(MAX_INFLUENCE, count * _influence(channel_for_type[kind]) / total), 4),
        }
        for kind, count in counts.items()
        if kind in channel_for_type
    }


def channel_breakdown(touchpoints: List[Dict]) -> Dict[str, Dict[str, float]]:
    total = len(touchpoints)
    counts = Counter(t["source"] for t in touchpoints)
    return {
        channel: {"count": count, "percentage": round(count / total, 4) if total else 0}
        for channel, count in counts.items()
    }


def build_attribution_chain(contact: Dict, deal: Dict, touchpoints: List[Dict]) -> Dict[str, Any]:
    model = determine_model(touchpoints)
    chain = {
        "contact_id": contact.get("id"),
        "deal_id": deal.get("id"),
        "deal_value": deal.get("value") or 0,
        "deal_status": deal.get("status"),
        "attribution_model": model.value,
        "total_touchpoints": len(touchpoints),
    }
    if not touchpoints:
        chain.update(
            attribution_certainty=NO_TOUCHPOINT_CERTAINTY,
            touchpoint_weights={},
            influence={},
        )
        return chain

    chain.update(
        attribution_certainty=calculate_certainty(contact, touchpoints),
        touchpoint_weights=touchpoint_weights(touchpoints, model),
        influence=channel_influence(touchpoints),
        significant_touchpoints=touchpoints,
    )
    return chain


def attribute_contact_records(
    contact: Dict,
    meetings: Iterable[Dict] = (),
    activities: Iterable[Dict] = (),
    forms: Iterable[Dict] = (),
    deals: Iterable[Dict] = (),
) -> Dict[str, Any]:
    """Full attribution for one contact from already-loaded rows."""
    touchpoints = build_touchpoints(meetings, activities, forms)
    chains = [build_attribution_chain(contact, d, touchpoints) for d in deals]

    if chains:
        certainty = max(c["attribution_certainty"] for c in chains)
    else:
        certainty = calculate_certainty(contact, touchpoints)

    return {
        "success": True,
        "contact": contact,
        "timeline": touchpoints,
        "first_touch": touchpoints[0] if touchpoints else None,
        "last_touch": touchpoints[-1] if touchpoints else None,
        "attribution_model": determine_model(touchpoints).value,
        "attribution_chains": chains,
        "channel_breakdown": channel_breakdown(touchpoints),
        "certainty_factors": certainty_factors(contact, touchpoints),
        "attribution_certainty": certainty,
    }


def summarize_attribution(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Roll per-contact attribution results up into dashboard stats."""
    total = len(results)
    model_stats = {m.value: 0 for m in AttributionModel}
    channel_stats = {s: {"contacts": 0, "touchpoints": 0, "influence": 0.0} for s in KNOWN_SOURCES}
    touch_types = Counter()
    deal_status = Counter()
    total_touchpoints = max_touchpoints = 0
    with_deals = with_meetings = multi_source = high_certainty = 0
    total_certainty = deal_value = 0.0
    deal_count = 0

    for result in results:
        certainty = result["attribution_certainty"]
        total_certainty += certainty
        if certainty >= HIGH_CERTAINTY:
            high_certainty += 1

        chains = result["attribution_chains"]
        if chains:
            with_deals += 1
        for chain in chains:
            model_stats[chain["attribution_model"]] += 1
            deal_count += 1
            deal_value += parse_currency_value(chain["deal_value"])
            deal_status[chain["deal_status"] or "unknown"] += 1

        timeline = result["timeline"]
        total_touchpoints += len(timeline)
        max_touchpoints = max(max_touchpoints, len(timeline))
        seen_sources = set()
        for tp in timeline:
            touch_types[tp["type"]] += 1
            if tp["source"] in channel_stats:
                stats = channel_stats[tp["source"]]
                stats["touchpoints"] += 1
                stats["influence"] = round(stats["influence"] + _influence(tp["source"]), 4)
                seen_sources.add(tp["source"])
        for source in seen_sources:
            channel_stats[source]["contacts"] += 1
        if any(tp["type"] == "meeting" for tp in timeline):
            with_meetings += 1

        if len(lead_sources(result["contact"])) >= 2:
            multi_source += 1

    best_channel = max(channel_stats, key=lambda c: channel_stats[c]["influence"])
    if channel_stats[best_channel]["influence"] == 0:
        best_channel = "unknown"

    return {
        "success": True,
        "total_contacts": total,
        "contacts_with_deals": with_deals,
        "contacts_with_meetings": with_meetings,
        "multi_source_contacts": multi_source,
        "average_certainty": round(total_certainty / total, 4) if total else 0,
        "high_certainty_contacts": high_certainty,
        "high_certainty_rate": round(high_certainty / total * 100, 1) if total else 0,
        "conversion_rate": round(with_deals / total * 100, 1) if total else 0,
        "deal_attribution_rate": round(with_deals / total * 100, 1) if total else 0,
        "most_effective_channel": best_channel,
        "model_stats": model_stats,
        "channel_stats": channel_stats,
        "touchpoint_stats": {
            "total_touchpoints": total_touchpoints,
            "average_per_contact": round(total_touchpoints / total, 2) if total else 0,
            "max_touchpoints": max_touchpoints,
            "types": dict(touch_types),
        },
        "deal_stats": {
            "total_deals": deal_count,
            "total_deal_value": round(deal_value, 2),
            "average_deal_value": round(deal_value / deal_count, 2) if deal_count else 0,
            "by_status": dict(deal_status),
        },
    }


# ---------------------------------------------------------------------------
# Database-backed entry points
# ---------------------------------------------------------------------------

def _group_by_contact(rows: Iterable[Dict]) -> Dict[Any, List[Dict]]:
    grouped: Dict[Any, List[Dict]] = defaultdict(list)
    for row in rows:
        if row.get("contact_id") is not None:
            grouped[row["contact_id"]].append(row)
    return grouped


def load_contact_records(contact_id: Any) -> Optional[Tuple[Dict, Dict[str, List[Dict]]]]:
    contact = get_row("contacts", contact_id)
    if contact is None:
        return None
    records = {
        table: fetch_all(table, filters={"contact_id": contact_id})
        for table in ("meetings", "activities", "forms", "deals")
    }
    return contact, records


def attribute_contact(contact_id: Any) -> Optional[Dict[str, Any]]:
    """Attribution for one contact, or None if the contact does not exist."""
    loaded = load_contact_records(contact_id)
    if loaded is None:
        return None
    contact, records = loaded
    return attribute_contact_records(contact, **records)


def contact_timeline(contact_id: Any) -> Optional[Dict[str, Any]]:
    """Simple first/last-touch timeline for one contact."""
    loaded = load_contact_records(contact_id)
    if loaded is None:
        return None
    contact, records = loaded
    touchpoints = build_touchpoints(records["meetings"], records["activities"], records["forms"])
    return {
        "contact_id": contact["id"],
        "contact_name": contact.get("name"),
        "touchpoints": touchpoints,
        "touchpoint_count": len(touchpoints),
        "first_touch": touchpoints[0] if touchpoints else None,
        "last_touch": touchpoints[-1] if touchpoints else None,
        "channels": sorted({t["source"] for t in touchpoints}),
        "deals": records["deals"],
    }


def attribute_all_contacts(use_cache: bool = True) -> Dict[str, Any]:
    """Attribute every contact and cache the summary for 30 minutes."""
    if use_cache:
        cached = cache_service.get(ATTRIBUTION_CACHE_KEY)
        if cached is not None:
            return cached

    contacts = fetch_all("contacts")
    by_table = {
        table: _group_by_contact(fetch_all(table))
        for table in ("meetings", "activities", "forms", "deals")
    }

    results = []
    for contact in contacts:
        cid = contact["id"]
        try:
            results.append(attribute_contact_records(
                contact,
                meetings=by_table["meetings"].get(cid, []),
                activities=by_table["activities"].get(cid, []),
                forms=by_table["forms"].get(cid, []),
                deals=by_table["deals"].get(cid, []),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Attribution failed for contact %s: %s", cid, e)

    summary = summarize_attribution(results)
    summary["cached_at"] = datetime.now(timezone.utc).isoformat()
    cache_service.set(ATTRIBUTION_CACHE_KEY, summary, ttl=ATTRIBUTION_CACHE_TTL)
    logger.info(
        "Attributed %d contacts: avg certainty %.2f, best channel %s",
        summary["total_contacts"], summary["average_certainty"],
        summary["most_effective_channel"],
    )
    return summary


def export_contact_to_notion(contact_id: Any, client=None) -> Optional[Dict[str, Any]]:
    """Write a contact's attribution to the Notion "Enhanced Attribution" database."""
    from integrations.notion import NotionClient

    result = attribute_contact(contact_id)
    if result is None:
        return None
    client = client or NotionClient()
    client.require_configured()
    database = client.setup_attribution_database()
    page = client.create_attribution_page(database["id"], result["contact"], result)
    logger.info("Exported attribution for contact %s to Notion page %s", contact_id, page.get("id"))
    return {"contact_id": contact_id, "notion_page_id": page.get("id")}
