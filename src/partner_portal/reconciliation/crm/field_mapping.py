"""Zoho record field mappings.

Defines:
- ZOHO_LEAD_FIELDS / ZOHO_DEAL_FIELDS: Zoho API field name -> portal field name
- lead_from_zoho() / deal_from_zoho(): Validate raw search results into
  ExternalLead / ExternalDeal (raise MalformedRecordError when unusable)
- deal_from_webhook(): Normalize a deal webhook payload into ExternalDeal
- build_zoho_lead_payload(): Outbound Leads record for a portal lead
- parse_approval_timestamp(): Lenient Approval_Time_Stamp parsing
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import structlog

from src.partner_portal.reconciliation.crm.status_map import to_external_status
from src.partner_portal.reconciliation.errors import InputValidationError, MalformedRecordError
from src.partner_portal.reconciliation.schemas import (
    DealWebhookPayload,
    ExternalDeal,
    ExternalLead,
    LeadRead,
)

logger = structlog.get_logger(__name__)

DEFAULT_LEAD_SOURCE = "zoho_sync"
PORTAL_LEAD_SOURCE = "Strategic Partner"


# ── Field Maps ─────────────────────────────────────────────────────────────

ZOHO_LEAD_FIELDS: dict[str, str] = {
    "id": "external_id",
    "First_Name": "first_name",
    "Last_Name": "last_name",
    "Email": "email",
    "Phone": "phone",
    "Company": "company",
    "Lead_Status": "status_raw",
    "Lead_Source": "lead_source",
}

ZOHO_DEAL_FIELDS: dict[str, str] = {
    "id": "external_id",
    "Deal_Name": "name",
    "Stage": "stage_raw",
    "First_Name": "first_name",
    "Last_Name": "last_name",
    "Email": "email",
    "Phone": "phone",
}


# ── Helpers ────────────────────────────────────────────────────────────────


def _clean(value: Any) -> str | None:
    """Zoho returns "" and null interchangeably; collapse both to None."""
    if value is None:
        return None
    if isinstance(value, dict):
        return _clean(value.get("name"))
    text = str(value).strip()
    return text or None


def _company(record: dict[str, Any]) -> str | None:
    return (
        _clean(record.get("Business_Name"))
        or _clean(record.get("Account_Name"))
        or _clean(record.get("Deal_Name"))
    )


def parse_approval_timestamp(value: Any) -> datetime | None:
    """Parse Approval_Time_Stamp; unparseable values are logged and dropped."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value).strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("field_mapping.bad_approval_timestamp", value=raw)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ── Inbound Conversion ─────────────────────────────────────────────────────


def lead_from_zoho(record: dict[str, Any]) -> ExternalLead:
    """Convert a Zoho Leads search record to ExternalLead.

    Raises:
        MalformedRecordError: id, Email, First_Name or Last_Name missing.
    """
    fields = {portal: _clean(record.get(zoho)) for zoho, portal in ZOHO_LEAD_FIELDS.items()}
    missing = [
        zoho for zoho in ("id", "Email", "First_Name", "Last_Name")
        if not fields[ZOHO_LEAD_FIELDS[zoho]]
    ]
    if missing:
        raise MalformedRecordError(
            f"Zoho lead {fields['external_id'] or '<no id>'} missing {', '.join(missing)}",
            external_id=fields["external_id"],
            missing=missing,
        )
    fields["email"] = fields["email"].lower()
    fields["lead_source"] = fields["lead_source"] or DEFAULT_LEAD_SOURCE
    return ExternalLead(**fields)


def deal_from_zoho(record: dict[str, Any]) -> ExternalDeal:
    """Convert a Zoho Deals search record to ExternalDeal.

    Raises:
        MalformedRecordError: id or Deal_Name missing.
    """
    fields = {portal: _clean(record.get(zoho)) for zoho, portal in ZOHO_DEAL_FIELDS.items()}
    missing = [zoho for zoho in ("id", "Deal_Name") if not fields[ZOHO_DEAL_FIELDS[zoho]]]
    if missing:
        raise MalformedRecordError(
            f"Zoho deal {fields['external_id'] or '<no id>'} missing {', '.join(missing)}",
            external_id=fields["external_id"],
            missing=missing,
        )
    if fields["email"]:
        fields["email"] = fields["email"].lower()
    return ExternalDeal(
        **fields,
        company=_company(record),
        approval_date=parse_approval_timestamp(record.get("Approval_Time_Stamp")),
    )


def deal_from_webhook(payload: DealWebhookPayload) -> ExternalDeal:
    """Normalize a deal webhook payload.

    Deal_Name is optional here: update events may omit it.

    Raises:
        InputValidationError: zohoDealId missing.
    """
    if not payload.zoho_deal_id:
        raise InputValidationError("zohoDealId is required")
    email = _clean(payload.email)
    company = (
        _clean(payload.business_name)
        or _clean(payload.account_name)
        or _clean(payload.deal_name)
    )
    return ExternalDeal(
        external_id=payload.zoho_deal_id,
        name=_clean(payload.deal_name),
        stage_raw=_clean(payload.stage),
        first_name=_clean(payload.first_name),
        last_name=_clean(payload.last_name),
        email=email.lower() if email else None,
        phone=_clean(payload.phone),
        company=company,
        approval_date=parse_approval_timestamp(payload.approval_time_stamp),
    )


# ── Outbound Conversion ────────────────────────────────────────────────────


def build_zoho_lead_payload(
    lead: LeadRead,
    partner_name: str,
    partner_external_id: str,
) -> dict[str, Any]:
    """Build the Zoho Leads record for a portal-submitted lead.

    Args:
        lead: Local lead being published.
        partner_name: Owning partner's display name.
        partner_external_id: Owning partner's Zoho Vendor id.

    Returns:
        Dict suitable as one element of the Zoho ``data`` array.
    """
    payload: dict[str, Any] = {
        "First_Name": lead.first_name,
        "Last_Name": lead.last_name,
        "Email": lead.email,
        "Company": lead.company or "",
        "Phone": lead.phone or "",
        "Lead_Status": to_external_status(lead.status),
        "Lead_Source": PORTAL_LEAD_SOURCE,
        "Vendor": {"name": partner_name, "id": partner_external_id},
    }
    if lead.created_by_user_id:
        payload["StrategicPartnerId"] = lead.created_by_user_id
    return payload
