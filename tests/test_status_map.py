"""Unit tests for lead status and deal stage vocabulary mapping."""

from __future__ import annotations

import pytest

from src.partner_portal.reconciliation.crm.stage_map import (
    DEFAULT_PORTAL_STAGE,
    PortalDealStage,
    stage_category,
    to_portal_stage,
)
from src.partner_portal.reconciliation.crm.status_map import (
    DEFAULT_PORTAL_STATUS,
    PortalLeadStatus,
    is_converted_status,
    normalize_portal_status,
    status_category,
    to_external_status,
    to_portal_status,
)


# ── Lead Status ────────────────────────────────────────────────────────────


class TestToPortalStatus:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("New", PortalLeadStatus.NEW),
            ("Contact Attempt 3", PortalLeadStatus.CONTACT_ATTEMPT),
            ("Interested - Needs Follow Up", PortalLeadStatus.CONTACTED_IN_PROGRESS),
            ("Pre-App Received", PortalLeadStatus.CONTACTED_IN_PROGRESS),
            ("Send to Motion.io", PortalLeadStatus.SENT_FOR_SIGNATURE),
            ("Signed Application", PortalLeadStatus.APPLICATION_SIGNED),
            ("Junk", PortalLeadStatus.LOST),
        ],
    )
    def test_known_values(self, raw, expected):
        assert to_portal_status(raw) == expected

    def test_unknown_maps_to_default(self):
        assert to_portal_status("Some Brand New Zoho Status") == DEFAULT_PORTAL_STATUS
        assert DEFAULT_PORTAL_STATUS.value == "New"

    def test_empty_and_none_map_to_default(self):
        assert to_portal_status(None) == DEFAULT_PORTAL_STATUS
        assert to_portal_status("") == DEFAULT_PORTAL_STATUS

    def test_surrounding_whitespace_ignored(self):
        assert to_portal_status("  Lost ") == PortalLeadStatus.LOST

    def test_converted_is_not_mapped(self):
        """Converted triggers deletion, so it has no portal status of its own."""
        assert to_portal_status("Converted") == DEFAULT_PORTAL_STATUS
        assert to_portal_status("Convert") == DEFAULT_PORTAL_STATUS


class TestConvertedStatus:
    @pytest.mark.parametrize("raw", ["Converted", "Converted - Deal", "Convert", " Converted "])
    def test_converted_values(self, raw):
        assert is_converted_status(raw) is True

    @pytest.mark.parametrize("raw", [None, "", "Signed Application", "converted", "Conversion Pending"])
    def test_non_converted_values(self, raw):
        assert is_converted_status(raw) is False


class TestOutboundStatus:
    def test_every_portal_status_has_an_external_value(self):
        for status in PortalLeadStatus:
            assert to_external_status(status)

    def test_round_trips_through_inbound_table(self):
        for status in PortalLeadStatus:
            assert to_portal_status(to_external_status(status)) == status

    def test_unknown_portal_value_maps_to_new(self):
        assert to_external_status("Not A Status") == "New"
        assert to_external_status(None) == "New"


class TestNormalizePortalStatus:
    def test_current_value_passes_through(self):
        assert normalize_portal_status("Sent for Signature") == PortalLeadStatus.SENT_FOR_SIGNATURE

    @pytest.mark.parametrize(
        "legacy, expected",
        [
            ("Pre-Vet / New Lead", PortalLeadStatus.NEW),
            ("Contacted", PortalLeadStatus.CONTACT_ATTEMPT),
            ("Application Submitted", PortalLeadStatus.SENT_FOR_SIGNATURE),
            ("Dead / Withdrawn", PortalLeadStatus.LOST),
        ],
    )
    def test_legacy_values(self, legacy, expected):
        assert normalize_portal_status(legacy) == expected

    def test_raw_zoho_value_falls_back_to_inbound_table(self):
        assert normalize_portal_status("Contact Attempt 2") == PortalLeadStatus.CONTACT_ATTEMPT

    def test_empty_is_default(self):
        assert normalize_portal_status(None) == DEFAULT_PORTAL_STATUS

    def test_status_category(self):
        assert status_category("Application Signed") == "success"
        assert status_category("Junk") == "closed"


# ── Deal Stage ─────────────────────────────────────────────────────────────


class TestToPortalStage:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Sent to Underwriting", PortalDealStage.IN_UNDERWRITING),
            ("App Pended", PortalDealStage.IN_UNDERWRITING),
            ("Conditionally Approved", PortalDealStage.CONDITIONALLY_APPROVED),
            ("Approved", PortalDealStage.APPROVED),
            ("Merchant Unresponsive", PortalDealStage.LOST),
            ("Dead / Do Not Contact", PortalDealStage.LOST),
            ("Declined", PortalDealStage.DECLINED),
            ("Approved - Closed", PortalDealStage.CLOSED),
        ],
    )
    def test_known_values(self, raw, expected):
        assert to_portal_stage(raw) == expected

    def test_unknown_maps_to_in_underwriting(self):
        assert to_portal_stage("Qualification") == DEFAULT_PORTAL_STAGE
        assert DEFAULT_PORTAL_STAGE.value == "In Underwriting"

    def test_none_maps_to_default(self):
        assert to_portal_stage(None) == DEFAULT_PORTAL_STAGE

    def test_portal_value_is_accepted(self):
        assert to_portal_stage("Closed") == PortalDealStage.CLOSED

    def test_stage_category(self):
        assert stage_category("Declined") == "rejected"
        assert stage_category("Something Else") == "review"
