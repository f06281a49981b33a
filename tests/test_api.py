"""Tests for the FastAPI app: routes, error envelope and response cache."""

from unittest.mock import patch

import httpx
import pytest
from fastapi import BackgroundTasks, HTTPException
from fastapi.testclient import TestClient

from dashboard.api.main import app
from dashboard.api.routers.sync import _trigger
from scripts.lib.cache import cache_service
from scripts.lib.sync_status import sync_status

JANUARY = "2026-01-01_2026-01-31"


@pytest.fixture
def client(fake_db):
    return TestClient(app)


@pytest.fixture
def seeded(fake_db):
    fake_db.seed("contacts", [
        {"id": 1, "name": "Ada Lovelace", "email": "ada@example.com", "company": "Engines",
         "status": "customer", "lead_source": "close,calendly", "assigned_to": "user_a",
         "created_at": "2026-01-02T00:00:00+00:00"},
        {"id": 2, "name": "Bob Smith", "email": "bob@example.com", "status": "lead",
         "lead_source": "typeform", "created_at": "2026-01-05T00:00:00+00:00"},
    ])
    fake_db.seed("deals", [
        {"id": 10, "contact_id": 1, "assigned_to": "user_a", "status": "won", "value": 1000,
         "cash_collected": 900, "contracted_value": 1000, "close_date": "2026-01-20T00:00:00+00:00",
         "created_at": "2026-01-03T00:00:00+00:00"},
    ])
    fake_db.seed("meetings", [
        {"id": 20, "contact_id": 1, "assigned_to": "user_a", "type": "Call 2",
         "status": "completed", "start_time": "2026-01-15T00:00:00+00:00"},
    ])
    fake_db.seed("close_users", [
        {"id": 1, "close_id": "user_a", "first_name": "Ada", "last_name": "Rep",
         "email": "rep@example.com", "status": "active"},
    ])
    return fake_db


def assert_error(resp, status, fragment=None):
    assert resp.status_code == status
    body = resp.json()
    assert body["success"] is False
    if fragment:
        assert fragment in body["error"]


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["integrations"]["supabase"] is True
        assert data["integrations"]["close"]["name"] == "Close"
        assert "X-Cache" not in resp.headers

    @pytest.mark.asyncio
    async def test_health_over_asgi(self, fake_db):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/api/health")
        assert resp.json()["service"] == "Pipeline Pulse"


class TestErrorEnvelope:
    def test_unknown_route(self, client):
        assert_error(client.get("/api/nope"), 404)

    def test_validation_errors_are_400(self, client):
        assert_error(client.get("/api/contacts?limit=0"), 400, "limit")

    def test_bad_date_range(self, client):
        assert_error(client.get("/api/dashboard?dateRange=yesterday-ish"), 400)

    def test_database_failure_is_500(self, client, fake_db):
        fake_db.fail_on.add("contacts")
        assert_error(client.get("/api/attribution/enhanced-stats"), 500,
                     "Failed to calculate attribution stats")


class TestContacts:
    def test_list_with_filters(self, client, seeded):
        data = client.get("/api/contacts?lead_source=calendly").json()
        assert data["count"] == 1
        assert data["total"] == 1
        assert data["results"][0]["name"] == "Ada Lovelace"

    def test_list_sorted(self, client, seeded):
        data = client.get("/api/contacts?sort=name&order=asc").json()
        assert [c["id"] for c in data["results"]] == [1, 2]

    def test_bad_sort(self, client, seeded):
        assert_error(client.get("/api/contacts?sort=password"), 400, "Cannot sort")

    def test_search(self, client, seeded):
        data = client.get("/api/contacts/search?q=smith").json()
        assert [c["id"] for c in data["results"]] == [2]

    def test_search_needs_two_characters(self, client, seeded):
        assert_error(client.get("/api/contacts/search?q=a"), 400)

    def test_detail(self, client, seeded):
        data = client.get("/api/contacts/1").json()
        assert data["deals"][0]["id"] == 10
        assert data["meetings"][0]["type"] == "Call 2"
        assert data["forms"] == []

    def test_detail_not_found(self, client, seeded):
        assert_error(client.get("/api/contacts/999"), 404, "Contact not found")


class TestCloseUsers:
    def test_list(self, client, seeded):
        data = client.get("/api/close-users").json()
        assert data["results"][0]["name"] == "Ada Rep"

    def test_lookup_by_close_id_and_row_id(self, client, seeded):
        assert client.get("/api/close-users/user_a").json()["name"] == "Ada Rep"
        assert client.get("/api/close-users/1").json()["close_id"] == "user_a"

    def test_not_found(self, client, seeded):
        assert_error(client.get("/api/close-users/user_zzz"), 404)

    def test_deals_and_contacts(self, client, seeded):
        assert client.get("/api/close-users/user_a/deals?status=won").json()["count"] == 1
        assert client.get("/api/close-users/user_a/contacts").json()["results"][0]["id"] == 1


class TestDashboard:
    def test_dashboard(self, client, seeded):
        data = client.get(f"/api/dashboard?dateRange={JANUARY}").json()
        assert data["success"] is True
        assert data["kpis"]["closed_deals"]["current"] == 1
        assert data["kpis"]["closing_rate"]["current"] == 100.0

    def test_enhanced_dashboard(self, client, seeded):
        resp = client.get(f"/api/enhanced-dashboard?dateRange={JANUARY}&skipAttribution=true")
        data = resp.json()
        assert resp.status_code == 200
        assert data["attribution_skipped"] is True
        assert data["attribution"] is None
        assert data["revenue"]["total_revenue"] == 1000
        assert data["sales_team"][0]["name"] == "Ada Rep"

    def test_start_and_end_dates(self, client, seeded):
        data = client.get("/api/dashboard?startDate=2026-01-01&endDate=2026-01-10").json()
        assert data["kpis"]["closed_deals"]["current"] == 0


class TestAttribution:
    def test_contact(self, client, seeded):
        data = client.get("/api/attribution/enhanced/1").json()
        assert data["attribution_chains"][0]["deal_id"] == 10

    def test_contact_not_found(self, client, seeded):
        assert_error(client.get("/api/attribution/enhanced/999"), 404, "Contact not found")
        assert_error(client.get("/api/attribution/timeline/999"), 404)

    def test_timeline(self, client, seeded):
        data = client.get("/api/attribution/timeline/1").json()
        assert data["touchpoint_count"] == 1

    def test_recompute_all(self, client, seeded):
        assert client.post("/api/attribution/all").json()["total_contacts"] == 2

    def test_notion_export_unconfigured(self, client, seeded):
        with patch.dict("os.environ", {"NOTION_INTEGRATION_SECRET": "", "NOTION_PAGE_URL": ""}, clear=False):
            resp = client.post("/api/attribution/contact/1", json={"export_to_notion": True})
        assert_error(resp, 400, "Notion is not configured")


class TestMetrics:
    def test_revenue(self, client, seeded):
        data = client.get(f"/api/metrics?dateRange={JANUARY}").json()
        assert data["total_revenue"] == 1000
        assert data["total_cash_collected"] == 900

    def test_bad_mode(self, client, seeded):
        assert_error(client.get(f"/api/metrics?dateRange={JANUARY}&mode=fiscal"), 400)

    def test_freshness(self, client, seeded):
        seeded.seed("data_freshness", [
            {"source": "close", "record_count": 2, "status": "ok",
             "updated_at": "2026-01-30T00:00:00+00:00"},
        ])
        data = client.get("/api/metrics/freshness").json()
        assert [row["source"] for row in data["sources"]] == ["close"]

    def test_field_coverage_report(self, client, seeded):
        data = client.get("/api/field-coverage-report").json()
        assert data["tables"]["contacts"]["records"] == 2

    def test_database_health(self, client, seeded):
        data = client.get("/api/database-health").json()
        assert data["table_counts"]["contacts"] == 2
        assert data["gaps"]["contacts_missing_email"] == 0
        assert data["gaps"]["deals_unassigned"] == 0
        assert data["gaps"]["meetings_unassigned"] == 0
        assert data["status"] == "healthy"

    def test_database_health_needs_repair(self, client, seeded):
        seeded.seed("deals", [{"status": "won", "value": 500}])
        data = client.get("/api/database-health").json()
        assert data["status"] == "needs_repair"
        assert data["gaps"]["won_deals_missing_cash"] == 1

    def test_cache_clear(self, client, seeded):
        client.get("/api/contacts")
        data = client.post("/api/cache/clear", json={"prefix": "response:"}).json()
        assert data["success"] is True
        assert client.get("/api/cache/stats").json()["keys"] == 0


class TestDataEnhancement:
    def test_unknown_repair(self, client):
        assert_error(client.post("/api/data-enhancement/teleport"), 404, "Unknown repair")

    def test_cash_with_ratio(self, client, fake_db):
        fake_db.seed("deals", [{"id": 1, "status": "won", "value": 1000}])
        data = client.post("/api/data-enhancement/cash", json={"ratio": 0.5}).json()
        assert data["results"]["cash"]["updated"] == 1
        assert fake_db.rows("deals")[0]["cash_collected"] == 500

    def test_ratio_out_of_range(self, client):
        assert_error(client.post("/api/data-enhancement/cash", json={"ratio": 2}), 400)

    def test_dry_run_all(self, client, fake_db):
        data = client.post("/api/data-enhancement/all", json={"dry_run": True}).json()
        assert data["dry_run"] is True
        assert "coverage" in data["results"]


class TestSyncRoutes:
    def test_trigger_all_runs_in_background(self, client):
        with patch("dashboard.api.routers.sync.run_sync", return_value={"status": "success"}) as run:
            resp = client.post("/api/sync/all", json={"skip": ["typeform"], "dry_run": True})
        assert resp.status_code == 202
        assert resp.json()["source"] == "all"
        kwargs = run.call_args.kwargs
        assert kwargs["skip"] == ["typeform"]
        assert kwargs["only"] is None
        assert kwargs["dry_run"] is True
        assert kwargs["trigger"] == "api"

    def test_trigger_single_source(self, client):
        with patch.dict("os.environ", {"CLOSE_API_KEY": "key"}, clear=False), \
                patch("dashboard.api.routers.sync.run_sync", return_value={"status": "success"}) as run:
            resp = client.post("/api/sync/close")
        assert resp.status_code == 202
        assert run.call_args.kwargs["only"] == ["close"]

    def test_unconfigured_source(self, client):
        with patch.dict("os.environ", {"CALENDLY_API_KEY": ""}, clear=False):
            assert_error(client.post("/api/sync/calendly"), 400, "Calendly is not configured")

    def test_unknown_step(self, client):
        assert_error(client.post("/api/sync/all", json={"skip": ["salesforce"]}), 400, "Unknown step")

    def test_already_running(self, client):
        sync_status.start_sync()
        assert_error(client.post("/api/sync/all"), 409)

    def test_claim_taken_before_task_runs(self):
        queued = BackgroundTasks()
        _trigger("all", None, None, queued)
        assert sync_status.get_sync_status()["in_progress"] is True
        with pytest.raises(HTTPException) as exc:
            _trigger("all", None, None, BackgroundTasks())
        assert exc.value.status_code == 409
        assert len(queued.tasks) == 1

    def test_claim_released_after_task(self, client):
        with patch("dashboard.api.routers.sync.run_sync", return_value={"status": "success"}):
            assert client.post("/api/sync/all").status_code == 202
            assert client.post("/api/sync/all").status_code == 202

    def test_background_crash_recorded(self, client):
        with patch("dashboard.api.routers.sync.run_sync", side_effect=RuntimeError("boom")):
            client.post("/api/sync/all")
        status = client.get("/api/sync/status").json()
        assert status["error"] == "boom"
        assert status["in_progress"] is False


class TestResponseCache:
    def test_miss_then_hit(self, client, seeded):
        first = client.get("/api/contacts")
        assert first.headers["X-Cache"] == "MISS"
        seeded.seed("contacts", [{"name": "Late Arrival"}])
        second = client.get("/api/contacts")
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == first.json()

    def test_bypass(self, client, seeded):
        client.get("/api/contacts")
        assert client.get("/api/contacts?cache=false").headers["X-Cache"] == "BYPASS"

    def test_query_string_is_part_of_key(self, client, seeded):
        client.get("/api/contacts?status=lead")
        assert client.get("/api/contacts?status=customer").headers["X-Cache"] == "MISS"

    def test_errors_not_cached(self, client, seeded):
        client.get("/api/contacts/999")
        assert client.get("/api/contacts/999").headers["X-Cache"] == "MISS"

    def test_post_clears_cached_responses(self, client, seeded):
        client.get("/api/contacts")
        client.post("/api/data-enhancement/emails", json={"dry_run": True})
        assert client.get("/api/contacts").headers["X-Cache"] == "MISS"

    def test_force_fresh_bypasses(self, client, seeded):
        url = f"/api/enhanced-dashboard?dateRange={JANUARY}&skipAttribution=true&forceFresh=true"
        first = client.get(url)
        assert first.json()["kpis"]["closed_deals"]["current"] == 1
        seeded.seed("deals", [
            {"contact_id": 2, "assigned_to": "user_a", "status": "won", "value": 500,
             "close_date": "2026-01-25T00:00:00+00:00", "created_at": "2026-01-06T00:00:00+00:00"},
        ])
        second = client.get(url)
        assert second.headers["X-Cache"] == "BYPASS"
        assert second.json()["kpis"]["closed_deals"]["current"] == 2

    def test_post_clears_derived_caches(self, client, seeded):
        cache_service.set(f"enhanced-dashboard:{JANUARY}:all:1", {"stale": True})
        cache_service.set("attribution-stats", {"stale": True})
        client.post("/api/data-enhancement/emails", json={"dry_run": True})
        assert cache_service.get(f"enhanced-dashboard:{JANUARY}:all:1") is None
        assert cache_service.get("attribution-stats") is None

    def test_live_endpoints_never_cached(self, client):
        client.get("/api/sync/status")
        assert "X-Cache" not in client.get("/api/sync/status").headers
