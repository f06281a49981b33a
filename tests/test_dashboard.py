"""Tests for dashboard aggregation."""

from unittest.mock import patch

import pytest

from scripts.analytics.dashboard import (
    build_enhanced_dashboard,
    compute_dashboard,
    find_missing_admins,
    percent_change,
)
from scripts.analytics.date_range import parse_date_range_string
from scripts.lib.errors import DataFetchError

JANUARY = parse_date_range_string("2026-01-01_2026-01-31")


def day(d):
    return f"{d}T00:00:00+00:00"


DEALS = [
    {"id": 1, "contact_id": 1, "assigned_to": "user_a", "status": "won", "value": 1000,
     "cash_collected": 800, "close_date": day("2026-01-10")},
    {"id": 2, "contact_id": 2, "assigned_to": "user_b", "status": "won", "value": 3000,
     "contracted_value": 3500, "close_date": day("2026-01-20")},
    {"id": 3, "contact_id": 1, "assigned_to": "user_a", "status": "won", "value": 500,
     "close_date": day("2025-12-15")},
]
MEETINGS = [
    {"id": 11, "contact_id": 1, "assigned_to": "user_a", "type": "Call 1",
     "status": "completed", "start_time": day("2026-01-03")},
    {"id": 12, "contact_id": 2, "assigned_to": "user_a", "type": "Call 1",
     "status": "canceled", "start_time": day("2026-01-04")},
    {"id": 13, "contact_id": 1, "assigned_to": "user_a", "type": "Call 2",
     "status": "completed", "start_time": day("2026-01-08")},
    {"id": 14, "contact_id": 3, "assigned_to": "user_b", "type": "Call 2",
     "status": "no_show", "start_time": day("2026-01-09")},
    {"id": 15, "contact_id": 3, "assigned_to": "user_b", "type": "Call 1",
     "status": "completed", "start_time": day("2026-01-05"), "utm_source": "outbound-ig"},
    {"id": 16, "contact_id": 2, "assigned_to": "user_b", "type": "Call 2",
     "status": "completed", "start_time": day("2026-01-15")},
]
ACTIVITIES = [
    {"id": 21, "contact_id": 1, "assigned_to": "user_a", "type": "call",
     "call_direction": "outbound", "call_duration": 120, "date": day("2026-01-02")},
    {"id": 22, "contact_id": 2, "assigned_to": "user_a", "type": "call",
     "call_direction": "outbound", "call_duration": 0, "call_outcome": "no_answer",
     "date": day("2026-01-02")},
    {"id": 23, "contact_id": 3, "assigned_to": "user_b", "type": "call",
     "call_direction": "inbound", "date": day("2026-01-06")},
]
CONTACTS = [
    {"id": 1, "name": "Ada", "email": "ada@example.com", "created_at": day("2025-12-20")},
    {"id": 2, "name": "Bob", "email": "bob@example.com", "status": "disqualified",
     "created_at": day("2026-01-02")},
    {"id": 3, "name": "Cy", "email": "cy@example.com", "created_at": day("2026-01-04")},
]
FORMS = [{"id": 31, "contact_id": 1}]


@pytest.fixture
def rows():
    return {"deals": DEALS, "meetings": MEETINGS, "activities": ACTIVITIES,
            "contacts": CONTACTS, "forms": FORMS}


class TestPercentChange:
    def test_growth(self):
        assert percent_change(150, 100) == 50.0

    def test_from_zero(self):
        assert percent_change(5, 0) == 100.0
        assert percent_change(0, 0) == 0.0

    def test_decline_from_negative(self):
        assert percent_change(-50, -100) == 50.0


class TestComputeDashboard:
    def test_kpis(self, rows):
        kpis = compute_dashboard(rows, JANUARY)["kpis"]
        current = {k: v["current"] for k, v in kpis.items()}
        assert current == {
            "closed_deals": 2,
            "cash_collected": 3800,
            "revenue_generated": 4500,
            "total_calls": 7,
            "call1_taken": 2,
            "call2_taken": 2,
            "closing_rate": 100.0,
            "avg_cash_collected": 1900.0,
            "solution_call_show_rate": 66.7,
            "earning_per_call2": 1900.0,
        }

    def test_previous_period_comparison(self, rows):
        dashboard = compute_dashboard(rows, JANUARY)
        assert dashboard["previous_range"]["start"].startswith("2025-12-01")
        kpis = dashboard["kpis"]
        assert kpis["closed_deals"] == {"current": 2, "previous": 1, "change": 100.0}
        assert kpis["cash_collected"]["previous"] == 500
        assert kpis["cash_collected"]["change"] == 660.0
        assert kpis["total_calls"]["change"] == 100.0

    def test_triage_metrics(self, rows):
        triage = compute_dashboard(rows, JANUARY)["triage_metrics"]
        assert triage["booked"] == 3
        assert triage["sits"] == 2
        assert triage["show_rate"] == 100.0
        assert triage["cancel_rate"] == 33.3
        assert triage["outbound_triages_set"] == 1
        assert triage["total_direct_bookings"] == 2
        assert triage["direct_booking_rate"] == 66.7

    def test_lead_metrics(self, rows):
        leads = compute_dashboard(rows, JANUARY)["lead_metrics"]
        assert leads == {"new_leads": 2, "disqualified": 1, "total_dials": 2, "pick_up_rate": 50.0}

    def test_advanced_metrics(self, rows):
        advanced = compute_dashboard(rows, JANUARY)["advanced_metrics"]
        assert advanced["calls_to_close"] == 3.5
        assert advanced["sales_cycle"] == 19.5
        assert advanced["solution_call_close_rate"] == 100.0
        assert advanced["profit_per_solution_call"] == 1900.0

    def test_sales_team(self, rows):
        team = compute_dashboard(rows, JANUARY)["sales_team"]
        assert [m["id"] for m in team] == ["user_b", "user_a"]
        rep_b, rep_a = team
        assert rep_a["calls"] == 4
        assert rep_a["call2_sits"] == 1
        assert rep_a["admin_missing_percent"] == 0
        assert rep_b["cash_collected"] == 3000
        assert rep_b["contracted_value"] == 3500
        assert rep_b["meetings_scheduled"] == 3
        assert rep_b["meetings_completed"] == 2
        assert rep_b["admin_missing_percent"] == 100.0
        assert rep_b["name"] is None

    def test_missing_admins(self, rows):
        admins = compute_dashboard(rows, JANUARY)["missing_admins"]
        assert len(admins) == 1
        assert admins[0]["assigned_to"] == "user_b"
        assert admins[0]["count"] == 3
        assert {c["name"] for c in admins[0]["contacts"]} == {"Bob", "Cy"}

    def test_user_scope(self, rows):
        dashboard = compute_dashboard(rows, JANUARY, user_id="user_a")
        assert dashboard["kpis"]["closed_deals"]["current"] == 1
        assert dashboard["kpis"]["cash_collected"]["current"] == 800
        assert [m["id"] for m in dashboard["sales_team"]] == ["user_a"]

    def test_empty_rows(self):
        dashboard = compute_dashboard({}, JANUARY)
        assert dashboard["kpis"]["closing_rate"]["current"] == 0
        assert dashboard["sales_team"] == []
        assert dashboard["missing_admins"] == []


class TestFindMissingAdmins:
    def test_sorted_by_count(self):
        meetings = [
            {"contact_id": 1, "assigned_to": "a", "invitee_name": "One"},
            {"contact_id": 2, "assigned_to": "b"},
            {"contact_id": 3, "assigned_to": "b"},
        ]
        admins = find_missing_admins(meetings, set(), {})
        assert [a["assigned_to"] for a in admins] == ["b", "a"]
        assert admins[1]["contacts"][0]["name"] == "One"


@pytest.fixture
def seeded(fake_db):
    fake_db.seed("deals", DEALS + [
        {"id": 4, "assigned_to": "user_a", "status": "lost", "value": 200,
         "close_date": day("2026-01-25")},
    ])
    fake_db.seed("meetings", MEETINGS)
    fake_db.seed("activities", ACTIVITIES)
    fake_db.seed("contacts", CONTACTS)
    fake_db.seed("forms", FORMS)
    fake_db.seed("close_users", [
        {"close_id": "user_a", "first_name": "Ada", "last_name": "Rep", "status": "active"},
        {"close_id": "user_b", "first_name": "Ben", "last_name": "Rep", "status": "active"},
    ])
    return fake_db


class TestBuildEnhancedDashboard:
    def test_revenue_overrides_and_names(self, seeded):
        dashboard = build_enhanced_dashboard(JANUARY)
        assert dashboard["success"] is True
        assert dashboard["kpis"]["revenue_generated"]["current"] == 4200
        assert dashboard["kpis"]["revenue_generated"]["change"] == 740.0
        assert dashboard["kpis"]["cash_collected"]["current"] == 3800
        assert dashboard["revenue"]["total_deals"] == 3
        assert [m["name"] for m in dashboard["sales_team"]] == ["Ben Rep", "Ada Rep"]
        assert dashboard["attribution"]["total_contacts"] == 3
        assert dashboard["attribution_skipped"] is False

    def test_stored_in_metrics(self, seeded):
        build_enhanced_dashboard(JANUARY, user_id="user_a", skip_attribution=True)
        stored = seeded.rows("metrics")
        assert len(stored) == 1
        assert stored[0]["date_range"] == "2026-01-01_2026-01-31"
        assert stored[0]["user_id"] == "user_a"
        assert stored[0]["data"]["attribution"] is None

    def test_cached_until_forced(self, seeded):
        first = build_enhanced_dashboard(JANUARY, skip_attribution=True)
        seeded.seed("deals", [{"status": "won", "value": 100, "assigned_to": "user_a",
                               "close_date": day("2026-01-30")}])
        assert build_enhanced_dashboard(JANUARY, skip_attribution=True) is first
        fresh = build_enhanced_dashboard(JANUARY, skip_attribution=True, force_fresh=True)
        assert fresh["kpis"]["closed_deals"]["current"] == 3

    def test_attribution_failure_is_tolerated(self, seeded):
        with patch("scripts.analytics.dashboard.attribution_summary",
                   side_effect=DataFetchError("down", source="contacts")):
            dashboard = build_enhanced_dashboard(JANUARY)
        assert dashboard["attribution"] is None
        assert dashboard["success"] is True
