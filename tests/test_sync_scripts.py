"""Tests for the Close, Calendly and Typeform sync scripts."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from integrations.close import CloseClient
from scripts.lib.errors import APIError, SchemaValidationError
from scripts.sync_calendly import (
    determine_assigned_user,
    determine_meeting_type,
    meeting_status,
    sync_calendly,
    sync_periods,
    transform_event,
)
from scripts.sync_close import (
    opportunity_status,
    sync_close,
    sync_close_users,
    transform_activity,
    transform_lead,
    transform_opportunity,
)
from scripts.sync_typeform import (
    extract_contact_fields,
    field_titles,
    sync_typeform,
    transform_response,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

LEAD = {
    "id": "lead_1",
    "display_name": "Ada Lovelace",
    "name": "Analytical Engines",
    "status_label": "Customer",
    "date_created": "2025-12-01T09:00:00Z",
    "custom": {"Lead Owner": "user_a"},
    "contacts": [{"name": "Ada", "title": "CEO",
                  "emails": [{"email": "Ada@Example.com"}],
                  "phones": [{"phone": "+1 555 010 2030"}]}],
}
LEAD_NO_EMAIL = {"id": "lead_2", "display_name": "Nobody", "contacts": [{"emails": []}]}
OPPORTUNITY = {"id": "oppo_1", "value": 250000, "status_type": "won",
               "date_won": "2026-01-10", "user_id": "user_a", "note": "Annual plan"}
CALL = {"id": "acti_1", "_type": "Call", "direction": "outbound", "duration": "95",
        "disposition": "answered", "date_created": "2026-01-09T10:00:00Z", "user_id": "user_a"}


def close_client(leads):
    client = MagicMock()
    client.iter_leads.return_value = iter(leads)
    client.get_lead_opportunities.return_value = [OPPORTUNITY]
    client.get_lead_activities.return_value = [CALL]
    return client


class TestCloseTransforms:
    def test_lead_to_contact(self):
        row = transform_lead(LEAD)
        assert row["email"] == "ada@example.com"
        assert row["name"] == "Ada Lovelace"
        assert row["company"] == "Analytical Engines"
        assert row["phone"] == "+1 555 010 2030"
        assert row["status"] == "customer"
        assert row["assigned_to"] == "user_a"

    def test_lead_without_email(self):
        assert transform_lead(LEAD_NO_EMAIL) is None

    def test_opportunity_value_is_cents(self):
        row = transform_opportunity(OPPORTUNITY, contact_id=7)
        assert row["value"] == 2500.0
        assert row["status"] == "won"
        assert row["assigned_to"] == "user_a"
        assert row["title"] == "Annual plan"

    @pytest.mark.parametrize("opportunity, expected", [
        ({"status_type": "active"}, "open"),
        ({"status_label": "Won"}, "won"),
        ({"status_label": "Negotiating"}, "open"),
    ])
    def test_opportunity_status(self, opportunity, expected):
        assert opportunity_status(opportunity) == expected

    def test_call_activity(self):
        row = transform_activity(CALL, contact_id=7)
        assert row["type"] == "call"
        assert row["call_duration"] == 95
        assert row["call_direction"] == "outbound"
        assert row["call_outcome"] == "answered"
        assert row["assigned_to"] == "user_a"

    def test_unknown_activity_is_note(self):
        assert transform_activity({"id": "acti_2", "_type": "SMS"}, 7)["type"] == "note"


class TestSyncClose:
    @pytest.fixture(autouse=True)
    def no_sleep(self):
        with patch("scripts.sync_close.time.sleep"):
            yield

    def test_full_sync(self, fake_db):
        totals = sync_close(client=close_client([LEAD, LEAD_NO_EMAIL]))
        assert totals == {"contacts": 1, "deals": 1, "activities": 1, "skipped": 1, "errors": 0}
        contact = fake_db.rows("contacts")[0]
        assert contact["lead_source"] == "close"
        deal = fake_db.rows("deals")[0]
        assert deal["contact_id"] == contact["id"]
        assert deal["value"] == 2500.0
        assert fake_db.rows("contact_user_assignments")[0]["close_user_id"] == "user_a"
        assert fake_db.rows("data_freshness")[0]["status"] == "ok"

    def test_merges_existing_contact(self, fake_db):
        fake_db.seed("contacts", [{"email": "ada@example.com", "name": "Ada L",
                                   "lead_source": "calendly", "phone": None}])
        sync_close(client=close_client([LEAD]))
        contacts = fake_db.rows("contacts")
        assert len(contacts) == 1
        assert contacts[0]["lead_source"] == "calendly,close"
        assert contacts[0]["name"] == "Ada L"
        assert contacts[0]["phone"] == "+1 555 010 2030"

    def test_resync_is_idempotent(self, fake_db):
        sync_close(client=close_client([LEAD]))
        sync_close(client=close_client([LEAD]))
        assert len(fake_db.rows("contacts")) == 1
        assert len(fake_db.rows("deals")) == 1
        assert len(fake_db.rows("activities")) == 1

    def test_lead_errors_are_counted(self, fake_db):
        client = close_client([LEAD, LEAD])
        client.get_lead_opportunities.side_effect = [APIError("boom", status_code=500), [OPPORTUNITY]]
        totals = sync_close(client=client)
        assert totals["errors"] == 1
        assert totals["contacts"] == 1
        assert fake_db.rows("data_freshness")[0]["status"] == "partial"

    def test_limit(self, fake_db):
        totals = sync_close(client=close_client([LEAD, LEAD_NO_EMAIL]), limit=1)
        assert totals["contacts"] == 1
        assert totals["skipped"] == 0

    def test_limit_leaves_resume_token_on_next_lead(self, fake_db):
        client = CloseClient(api_key="k")
        with patch.object(client, "_paginate", return_value=iter([LEAD, LEAD_NO_EMAIL, LEAD])), \
                patch.object(client, "get_lead_opportunities", return_value=[]), \
                patch.object(client, "get_lead_activities", return_value=[]):
            totals = sync_close(client=client, limit=1, dry_run=True)
        assert totals["contacts"] == 1
        assert client.resume_token == "1"

    def test_dry_run_writes_nothing(self, fake_db):
        totals = sync_close(client=close_client([LEAD]), dry_run=True)
        assert totals["deals"] == 1
        assert fake_db.tables == {}

    def test_close_users(self, fake_db):
        client = MagicMock()
        client.list_users.return_value = [
            {"id": "user_a", "email": "A@Example.com", "first_name": "Ada", "is_active": False},
            {"email": "no-id@example.com"},
        ]
        assert sync_close_users(client=client) == 1
        user = fake_db.rows("close_users")[0]
        assert user["email"] == "a@example.com"
        assert user["status"] == "inactive"


# ---------------------------------------------------------------------------
# Calendly
# ---------------------------------------------------------------------------

def event(uuid, name="Solution Call", start="2026-01-10T15:00:00Z", end="2026-01-10T15:45:00Z"):
    return {
        "uri": f"https://api.calendly.com/scheduled_events/{uuid}",
        "name": name,
        "status": "active",
        "start_time": start,
        "end_time": end,
        "event_memberships": [{"user_email": "ada@company.com"}],
        "location": {"type": "zoom", "join_url": "https://zoom.us/j/1"},
    }


class TestCalendlyTransforms:
    @pytest.mark.parametrize("name, expected", [
        ("Solution Session", "Call 2"),
        ("Intro Call", "Call 1"),
        ("Next Step Call", "Call 3"),
        ("Coffee chat", "Call 1"),
        (None, "Call 1"),
    ])
    def test_meeting_type(self, name, expected):
        assert determine_meeting_type(name) == expected

    def test_assigned_user(self):
        users = [{"close_id": "user_a", "email": "ada@company.com"}]
        assert determine_assigned_user("ADA@company.com", users) == "user_a"
        assert determine_assigned_user("ada@gmail.com", users) == "user_a"
        assert determine_assigned_user("ghost@deleted.calendly.com", users) is None
        assert determine_assigned_user(None, users) is None

    def test_meeting_status(self):
        past = {"end_time": "2026-05-01T00:00:00Z"}
        future = {"end_time": "2026-07-01T00:00:00Z"}
        assert meeting_status({**past, "status": "canceled"}, {}, NOW) == "canceled"
        assert meeting_status(past, {"no_show": {"uri": "x"}}, NOW) == "no_show"
        assert meeting_status(past, {}, NOW) == "completed"
        assert meeting_status(future, {}, NOW) == "scheduled"

    def test_sync_periods(self):
        labels = [p[0] for p in sync_periods(historical=True, now=NOW)]
        assert labels == ["recent", "1-3 months", "3-6 months"]
        assert sync_periods(now=NOW)[0][2] is None

    def test_event_needs_start_time(self):
        with pytest.raises(SchemaValidationError):
            transform_event({"uri": "x"}, {}, 1, None)

    def test_event_row(self):
        invitee = {"email": "Grace@Navy.mil", "name": "Grace", "rescheduled": "true",
                   "tracking": {"utm_source": "outbound"}}
        row = transform_event(event("EVT1"), invitee, 5, "user_a")
        assert row["calendly_event_id"] == "EVT1"
        assert row["type"] == "Call 2"
        assert row["duration"] == 45
        assert row["rescheduled"] is True
        assert row["utm_source"] == "outbound"
        assert row["conference_url"] == "https://zoom.us/j/1"


class TestSyncCalendly:
    @pytest.fixture
    def client(self):
        invitees = {
            "EVT1": [{"email": "grace@navy.mil", "name": "Grace Hopper"}],
            "EVT2": [{"name": "No Email"}],
        }
        client = MagicMock()
        client.iter_events.side_effect = lambda **kw: iter([event("EVT1"), event("EVT2"), event("EVT3")])
        client.get_invitees.side_effect = lambda uri: invitees.get(uri.rsplit("/", 1)[-1], [])
        return client

    def test_imports_new_events(self, fake_db, client):
        fake_db.seed("close_users", [{"close_id": "user_a", "email": "ada@company.com",
                                      "first_name": "Ada"}])
        fake_db.seed("meetings", [{"calendly_event_id": "EVT3"}])
        totals = sync_calendly(client=client)
        assert totals == {"total_events": 3, "imported": 1, "updated": 1, "skipped": 1, "errors": 0}

        meeting = next(m for m in fake_db.rows("meetings") if m["calendly_event_id"] == "EVT1")
        assert meeting["assigned_to"] == "user_a"
        assert meeting["status"] == "completed"
        contact = fake_db.rows("contacts")[0]
        assert meeting["contact_id"] == contact["id"]
        assert contact["lead_source"] == "calendly"

    def test_matches_contact_by_name(self, fake_db, client):
        fake_db.seed("contacts", [{"name": "grace hopper", "email": None, "lead_source": "close"}])
        sync_calendly(client=client)
        contacts = fake_db.rows("contacts")
        assert len(contacts) == 1
        assert contacts[0]["lead_source"] == "close,calendly"

    def test_limit(self, fake_db, client):
        totals = sync_calendly(client=client, limit=1)
        assert totals["imported"] == 1
        assert totals["total_events"] == 1

    def test_resync_refreshes_stored_meeting(self, fake_db):
        fake_db.seed("meetings", [{"calendly_event_id": "EVT9", "status": "scheduled"}])
        client = MagicMock()
        client.iter_events.side_effect = lambda **kw: iter([{**event("EVT9"), "status": "canceled"}])
        client.get_invitees.return_value = [
            {"email": "grace@navy.mil", "cancellation": {"created_at": "2026-01-09T12:00:00Z"}},
        ]
        totals = sync_calendly(client=client)
        assert totals["updated"] == 1
        assert totals["imported"] == 0
        meeting = fake_db.rows("meetings")[0]
        assert meeting["status"] == "canceled"
        assert meeting["canceled_at"] is not None

        again = sync_calendly(client=client)
        assert again["updated"] == 0
        assert again["skipped"] == 1

    def test_past_meeting_becomes_completed(self, fake_db):
        fake_db.seed("meetings", [{"calendly_event_id": "EVT8", "status": "scheduled"}])
        client = MagicMock()
        client.iter_events.side_effect = lambda **kw: iter([event("EVT8")])
        client.get_invitees.return_value = [{"email": "grace@navy.mil"}]
        sync_calendly(client=client, dry_run=True)
        assert fake_db.rows("meetings")[0]["status"] == "scheduled"
        sync_calendly(client=client)
        assert fake_db.rows("meetings")[0]["status"] == "completed"


# ---------------------------------------------------------------------------
# Typeform
# ---------------------------------------------------------------------------

FORM = {
    "id": "F1",
    "title": "Application",
    "fields": [
        {"id": "f_email", "title": "Email"},
        {"id": "f_name", "title": "What's your full name?"},
        {"id": "f_company", "title": "Company name"},
        {"id": "f_group", "title": "More about you",
         "properties": {"fields": [{"id": "f_phone", "title": "Phone"}]}},
    ],
}
RESPONSE = {
    "token": "tok1",
    "response_id": "tok1",
    "landed_at": "2026-01-05T10:00:00Z",
    "submitted_at": "2026-01-05T10:04:00Z",
    "hidden": {"utm_source": "ig"},
    "answers": [
        {"type": "email", "email": "Grace@Navy.mil", "field": {"id": "f_email"}},
        {"type": "text", "text": "Grace Hopper", "field": {"id": "f_name"}},
        {"type": "text", "text": "Navy", "field": {"id": "f_company"}},
        {"type": "phone_number", "phone_number": "+1 555 010 9999", "field": {"id": "f_phone"}},
    ],
}
NO_EMAIL_RESPONSE = {"token": "tok2", "answers": [
    {"type": "text", "text": "Anonymous", "field": {"id": "f_name"}},
]}


def typeform_client():
    client = MagicMock()
    client.list_forms.return_value = [{"id": "F1"}]
    client.get_form.return_value = FORM
    client.iter_responses.side_effect = lambda fid, since=None: iter([RESPONSE, NO_EMAIL_RESPONSE])
    return client


class TestTypeformTransforms:
    def test_nested_field_titles(self):
        titles = field_titles(FORM)
        assert titles["f_phone"] == "Phone"
        assert len(titles) == 5

    def test_contact_fields(self):
        fields = extract_contact_fields(RESPONSE, field_titles(FORM))
        assert fields == {"email": "grace@navy.mil", "name": "Grace Hopper",
                          "phone": "+1 555 010 9999", "company": "Navy"}

    def test_first_and_last_name_joined(self):
        titles = {"a": "First name", "b": "Last name"}
        response = {"answers": [
            {"type": "text", "text": "Grace", "field": {"id": "a"}},
            {"type": "text", "text": "Hopper", "field": {"id": "b"}},
        ], "hidden": {"email": "G@navy.mil"}}
        fields = extract_contact_fields(response, titles)
        assert fields["name"] == "Grace Hopper"
        assert fields["email"] == "g@navy.mil"

    def test_response_row(self):
        row = transform_response(RESPONSE, FORM, field_titles(FORM), contact_id=3)
        assert row["typeform_response_id"] == "tok1"
        assert row["answers"]["Company name"] == "Navy"
        assert row["completion_time"] == 240
        assert row["completion_percentage"] == 80
        assert row["status"] == "completed"
        assert row["utm_source"] == "ig"


class TestSyncTypeform:
    @pytest.fixture(autouse=True)
    def no_sleep(self):
        with patch("scripts.sync_typeform.time.sleep"):
            yield

    def test_imports_responses(self, fake_db):
        totals = sync_typeform(client=typeform_client())
        assert totals == {"synced": 1, "errors": 0, "no_email": 1}
        form = fake_db.rows("forms")[0]
        contact = fake_db.rows("contacts")[0]
        assert form["contact_id"] == contact["id"]
        assert contact["lead_source"] == "typeform"
        activity = fake_db.rows("activities")[0]
        assert activity["type"] == "form_submission"
        assert activity["source_id"] == "typeform_tok1"

    def test_fuzzy_match_merges_contact(self, fake_db):
        fake_db.seed("contacts", [{"name": "Grace Hopper", "company": "Navy",
                                   "email": "old@navy.mil", "lead_source": "close"}])
        sync_typeform(client=typeform_client(), form_id="F1")
        contacts = fake_db.rows("contacts")
        assert len(contacts) == 1
        assert contacts[0]["lead_source"] == "close,typeform"
        assert contacts[0]["phone"] == "+1 555 010 9999"

    def test_resync_does_not_duplicate(self, fake_db):
        sync_typeform(client=typeform_client())
        sync_typeform(client=typeform_client())
        assert len(fake_db.rows("forms")) == 1
        assert len(fake_db.rows("activities")) == 1
