"""Unit tests for Zoho field mapping helpers."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.partner_portal.reconciliation.crm.field_mapping import (
    DEFAULT_LEAD_SOURCE,
    PORTAL_LEAD_SOURCE,
    build_zoho_lead_payload,
    deal_from_webhook,
    deal_from_zoho,
    lead_from_zoho,
    parse_approval_timestamp,
)
from src.partner_portal.reconciliation.errors import InputValidationError, MalformedRecordError
from src.partner_portal.reconciliation.schemas import DealWebhookPayload, LeadRead


# ── Helpers ────────────────────────────────────────────────────────────────


def _make_zoho_lead(**overrides) -> dict:
    record = {
        "id": "4876876000000111001",
        "First_Name": "Ada",
        "Last_Name": "Lovelace",
        "Email": "Ada@Example.com",
        "Phone": "555-0100",
        "Company": "Analytical Engines",
        "Lead_Status": "Contact Attempt 1",
        "Lead_Source": "Web",
    }
    record.update(overrides)
    return record


def _make_lead_read(**overrides) -> LeadRead:
    defaults = {
        "id": "lead-1",
        "partner_id": "partner-1",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "status": "Sent for Signature",
    }
    defaults.update(overrides)
    return LeadRead(**defaults)


# ── Leads ──────────────────────────────────────────────────────────────────


class TestLeadFromZoho:
    def test_maps_fields_and_lowercases_email(self):
        lead = lead_from_zoho(_make_zoho_lead())
        assert lead.external_id == "4876876000000111001"
        assert lead.email == "ada@example.com"
        assert lead.company == "Analytical Engines"
        assert lead.status_raw == "Contact Attempt 1"
        assert lead.lead_source == "Web"

    def test_missing_lead_source_defaults(self):
        lead = lead_from_zoho(_make_zoho_lead(Lead_Source=None))
        assert lead.lead_source == DEFAULT_LEAD_SOURCE

    def test_blank_strings_are_none(self):
        lead = lead_from_zoho(_make_zoho_lead(Phone="  ", Company=""))
        assert lead.phone is None
        assert lead.company is None

    @pytest.mark.parametrize("field", ["id", "Email", "First_Name", "Last_Name"])
    def test_missing_required_field_is_malformed(self, field):
        with pytest.raises(MalformedRecordError) as exc_info:
            lead_from_zoho(_make_zoho_lead(**{field: None}))
        assert field in exc_info.value.details["missing"]

    def test_malformed_is_an_input_validation_error(self):
        with pytest.raises(InputValidationError):
            lead_from_zoho({"id": "1"})


# ── Deals ──────────────────────────────────────────────────────────────────


class TestDealFromZoho:
    def test_maps_fields(self):
        deal = deal_from_zoho({
            "id": "d-1",
            "Deal_Name": "Acme Funding",
            "Stage": "Approved",
            "Email": "OWNER@ACME.EXAMPLE",
            "Account_Name": {"name": "Acme LLC", "id": "acc-1"},
            "Approval_Time_Stamp": "2026-03-01T10:00:00Z",
        })
        assert deal.external_id == "d-1"
        assert deal.name == "Acme Funding"
        assert deal.stage_raw == "Approved"
        assert deal.email == "owner@acme.example"
        assert deal.company == "Acme LLC"
        assert deal.approval_date == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_business_name_wins_for_company(self):
        deal = deal_from_zoho({
            "id": "d-1",
            "Deal_Name": "Acme Funding",
            "Business_Name": "Acme Holdings",
            "Account_Name": "Acme LLC",
        })
        assert deal.company == "Acme Holdings"

    def test_company_falls_back_to_deal_name(self):
        deal = deal_from_zoho({"id": "d-1", "Deal_Name": "Acme Funding"})
        assert deal.company == "Acme Funding"

    def test_missing_deal_name_is_malformed(self):
        with pytest.raises(MalformedRecordError):
            deal_from_zoho({"id": "d-1", "Stage": "Approved"})


class TestDealFromWebhook:
    def test_numeric_id_is_stringified(self):
        payload = DealWebhookPayload.model_validate(
            {"zohoDealId": 4876876000000222001, "Deal_Name": "Acme", "Partners_Id": 77}
        )
        deal = deal_from_webhook(payload)
        assert deal.external_id == "4876876000000222001"
        assert payload.partner_external_id() == "77"

    def test_deal_name_optional(self):
        payload = DealWebhookPayload.model_validate({"zohoDealId": "d-1", "Stage": "Declined"})
        deal = deal_from_webhook(payload)
        assert deal.name is None
        assert deal.stage_raw == "Declined"

    def test_missing_deal_id_rejected(self):
        payload = DealWebhookPayload.model_validate({"Deal_Name": "Acme"})
        with pytest.raises(InputValidationError):
            deal_from_webhook(payload)


class TestPartnerExternalIdPriority:
    def test_partners_id_first(self):
        payload = DealWebhookPayload.model_validate({
            "zohoDealId": "d-1",
            "Partners_Id": "P",
            "StrategicPartnerId": "S",
            "Vendor": {"id": "V"},
        })
        assert payload.partner_external_id() == "P"

    def test_strategic_partner_id_second(self):
        payload = DealWebhookPayload.model_validate({
            "zohoDealId": "d-1",
            "StrategicPartnerId": "S",
            "Vendor": {"id": "V"},
        })
        assert payload.partner_external_id() == "S"

    def test_vendor_id_last(self):
        payload = DealWebhookPayload.model_validate(
            {"zohoDealId": "d-1", "Partners_Id": "  ", "Vendor": {"id": "V", "name": "Acme"}}
        )
        assert payload.partner_external_id() == "V"

    def test_none_present(self):
        payload = DealWebhookPayload.model_validate({"zohoDealId": "d-1", "Vendor": {}})
        assert payload.partner_external_id() is None


# ── Approval Timestamp ─────────────────────────────────────────────────────


class TestParseApprovalTimestamp:
    def test_naive_value_is_utc(self):
        parsed = parse_approval_timestamp("2026-03-01T10:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset().total_seconds() == 0

    def test_offset_preserved(self):
        parsed = parse_approval_timestamp("2026-03-01T10:00:00-05:00")
        assert parsed == datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)

    def test_garbage_is_dropped(self):
        assert parse_approval_timestamp("next tuesday") is None

    def test_empty_is_none(self):
        assert parse_approval_timestamp("") is None
        assert parse_approval_timestamp(None) is None


# ── Outbound ───────────────────────────────────────────────────────────────


class TestBuildZohoLeadPayload:
    def test_payload_shape(self):
        payload = build_zoho_lead_payload(
            _make_lead_read(created_by_user_id="user-9", company=None),
            partner_name="Acme Partners",
            partner_external_id="V1",
        )
        assert payload["First_Name"] == "Ada"
        assert payload["Email"] == "ada@example.com"
        assert payload["Company"] == ""
        assert payload["Lead_Status"] == "Send to Motion.io"
        assert payload["Lead_Source"] == PORTAL_LEAD_SOURCE
        assert payload["Vendor"] == {"name": "Acme Partners", "id": "V1"}
        assert payload["StrategicPartnerId"] == "user-9"

    def test_no_creator_omits_strategic_partner_id(self):
        payload = build_zoho_lead_payload(_make_lead_read(), "Acme Partners", "V1")
        assert "StrategicPartnerId" not in payload
