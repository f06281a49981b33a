"""Tests for field coverage scoring and the coverage report."""

import pytest

from scripts.analytics.field_coverage import (
    COVERAGE_CONFIG,
    calculate_activity_coverage,
    calculate_contact_coverage,
    calculate_deal_coverage,
    calculate_field_coverage,
    field_coverage_report,
    missing_required_fields,
    update_table_coverage,
)
from scripts.lib.utils import round_half_up


def full_contact():
    cfg = COVERAGE_CONFIG["contact"]
    return {f: "x" for f in cfg["required"] + cfg["optional"]}


class TestRoundHalfUp:
    def test_halves_round_up(self):
        assert round_half_up(84.5) == 85
        assert round_half_up(2.5) == 3

    def test_below_half_rounds_down(self):
        assert round_half_up(84.49) == 84


class TestEntityCoverage:
    def test_complete_contact_is_100(self):
        assert calculate_contact_coverage(full_contact()) == 100

    def test_required_only_contact_is_70(self):
        cfg = COVERAGE_CONFIG["contact"]
        assert calculate_contact_coverage({f: "x" for f in cfg["required"]}) == 70

    def test_blank_strings_do_not_count(self):
        contact = full_contact()
        contact.update({f: "   " for f in COVERAGE_CONFIG["contact"]["optional"]})
        assert calculate_contact_coverage(contact) == 70

    def test_empty_contact_is_0(self):
        assert calculate_contact_coverage({}) == 0

    def test_deal_weights_required_80(self):
        cfg = COVERAGE_CONFIG["deal"]
        assert calculate_deal_coverage({f: 1 for f in cfg["required"]}) == 80

    def test_zero_counts_as_populated(self):
        cfg = COVERAGE_CONFIG["deal"]
        deal = {f: 0 for f in cfg["required"] + cfg["optional"]}
        assert calculate_deal_coverage(deal) == 100

    def test_call_activity_includes_call_fields(self):
        activity = {"contact_id": 1, "type": "call", "source": "close",
                    "source_id": "acti_1", "date": "2026-01-01", "call_direction": "outbound"}
        # 6 of 8 fields
        assert calculate_activity_coverage(activity) == 75

    def test_note_activity_uses_base_fields(self):
        activity = {"contact_id": 1, "type": "note", "source": "close",
                    "source_id": "acti_2", "date": "2026-01-01"}
        assert calculate_activity_coverage(activity) == 100

    def test_unknown_entity(self):
        with pytest.raises(ValueError):
            calculate_field_coverage("company", {})

    def test_missing_required_fields(self):
        assert missing_required_fields("meeting", {"contact_id": 1, "type": "Call 1"}) == [
            "status", "start_time", "source", "calendly_event_id",
        ]


class TestUpdateTableCoverage:
    def test_writes_changed_rows_only(self, fake_db):
        cfg = COVERAGE_CONFIG["contact"]
        complete = {f: "x" for f in cfg["required"]}
        fake_db.seed("contacts", [
            {**complete, "field_coverage": 70, "required_fields_complete": True},
            {"name": "Ada", "field_coverage": 0},
        ])
        assert update_table_coverage("contact") == 1
        ada = fake_db.rows("contacts")[1]
        assert ada["field_coverage"] == 10
        assert ada["required_fields_complete"] is False

    def test_dry_run_writes_nothing(self, fake_db):
        fake_db.seed("deals", [{"title": "Deal"}])
        assert update_table_coverage("deal", dry_run=True) == 1
        assert "field_coverage" not in fake_db.rows("deals")[0]


class TestFieldCoverageReport:
    def test_report_from_preloaded_tables(self):
        cfg = COVERAGE_CONFIG["contact"]
        report = field_coverage_report({
            "contacts": [full_contact(), {f: "x" for f in cfg["required"]}],
            "deals": [],
            "meetings": [],
            "forms": [],
            "activities": [],
        })
        contacts = report["tables"]["contacts"]
        assert contacts["records"] == 2
        assert contacts["average_coverage"] == 85.0
        assert contacts["required_complete_percent"] == 100.0
        assert contacts["field_fill_rates"]["address"] == 50.0
        assert report["tables"]["deals"]["records"] == 0
        assert report["overall_coverage"] == 25.5

    def test_overall_weights_tables_by_importance(self):
        form_cfg = COVERAGE_CONFIG["form"]
        report = field_coverage_report({
            "contacts": [full_contact()],
            "forms": [{f: "x" for f in form_cfg["required"] + form_cfg["optional"]}] * 3,
            "deals": [],
            "meetings": [],
            "activities": [],
        })
        assert report["tables"]["forms"]["average_coverage"] == 100.0
        # contacts 0.3 + forms 0.05; record counts do not matter
        assert report["overall_coverage"] == 35.0
