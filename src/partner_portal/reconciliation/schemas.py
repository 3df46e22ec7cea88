"""Pydantic schemas for CRM reconciliation.

Defines all structured types shared by the webhook and sync paths:
- Enums: SyncState, UserRole, SyncTrigger, ActivityAction, MatchStrategy
- Portal records: PartnerRead, UserRead, LeadCreate/Update/Read, DealCreate/Update/Read
- History: HistoryEntry, LeadStatusHistoryRead, DealStageHistoryRead
- Audit: ActivityCreate, ActivityRead
- CRM records: ExternalLead, ExternalDeal (normalized Zoho records)
- Webhook payloads: PartnerWebhookPayload, LeadStatusWebhookPayload, DealWebhookPayload
- Results: ContactIdentity, EntitySyncCounts, PartnerSyncResult, SyncRunResult, WebhookResult
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncState(str, Enum):
    """Mirror state of a lead/deal relative to Zoho."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class UserRole(str, Enum):
    ADMIN = "admin"
    SUB = "sub"


class SyncTrigger(str, Enum):
    """What started a full reconciliation run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    CLI = "cli"


class ActivityAction(str, Enum):
    """Activity log action names written by the reconciliation engine."""

    PARTNER_CREATED = "partner_created"
    SUB_ACCOUNT_CREATED = "sub_account_created"
    LEAD_STATUS_UPDATED = "lead_status_updated"
    LEAD_CONVERTED = "lead_converted"
    LEAD_CONVERSION_CLEANUP_FAILED = "lead_conversion_cleanup_failed"
    DEAL_CREATED = "deal_created"
    DEAL_UPDATED = "deal_updated"
    SYNC_COMPLETED = "daily_sync_completed"


class MatchStrategy(str, Enum):
    """Conversion matching strategies, in priority order."""

    EMAIL = "email"
    NAME_AND_COMPANY = "name_and_company"
    NAME_ONLY = "name_only"


# ── Portal Records ──────────────────────────────────────────────────────────


class PartnerRead(BaseModel):
    id: str
    external_id: str | None = None
    name: str
    email: str
    approved: bool = False
    status: str = "pending"
    last_sync_at: datetime | None = None
    created_at: datetime | None = None


class UserRead(BaseModel):
    id: str
    partner_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole = UserRole.SUB
    is_active: bool = True
    created_at: datetime | None = None


class LeadCreate(BaseModel):
    """Schema for inserting a lead."""

    partner_id: str
    created_by_user_id: str | None = None
    external_id: str | None = None
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    company: str | None = None
    status: str = "New"
    external_status_raw: str | None = None
    lead_source: str | None = None
    sync_state: SyncState = SyncState.PENDING
    last_sync_at: datetime | None = None


class LeadUpdate(BaseModel):
    """Partial lead update. Only fields explicitly set are written."""

    external_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    status: str | None = None
    external_status_raw: str | None = None
    lead_source: str | None = None
    sync_state: SyncState | None = None
    last_sync_at: datetime | None = None


class LeadRead(BaseModel):
    id: str
    external_id: str | None = None
    partner_id: str
    created_by_user_id: str | None = None
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    company: str | None = None
    status: str = "New"
    external_status_raw: str | None = None
    lead_source: str | None = None
    sync_state: SyncState = SyncState.PENDING
    last_sync_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealCreate(BaseModel):
    """Schema for inserting a deal."""

    external_id: str
    partner_id: str
    created_by_user_id: str | None = None
    converted_from_lead_id: str | None = None
    name: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    stage: str = "In Underwriting"
    external_stage_raw: str | None = None
    approval_date: datetime | None = None
    sync_state: SyncState = SyncState.PENDING
    last_sync_at: datetime | None = None


class DealUpdate(BaseModel):
    """Partial deal update. Only fields explicitly set are written."""

    partner_id: str | None = None
    created_by_user_id: str | None = None
    converted_from_lead_id: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    stage: str | None = None
    external_stage_raw: str | None = None
    approval_date: datetime | None = None
    sync_state: SyncState | None = None
    last_sync_at: datetime | None = None


class DealRead(BaseModel):
    id: str
    external_id: str
    partner_id: str
    created_by_user_id: str | None = None
    converted_from_lead_id: str | None = None
    name: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    stage: str = "In Underwriting"
    external_stage_raw: str | None = None
    approval_date: datetime | None = None
    sync_state: SyncState = SyncState.PENDING
    last_sync_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── History ─────────────────────────────────────────────────────────────────


class HistoryEntry(BaseModel):
    """One status/stage transition, written by HistoryInvariantEnforcer."""

    old_value: str | None = None
    new_value: str
    changed_by: str | None = None
    notes: str | None = None


class LeadStatusHistoryRead(BaseModel):
    id: str
    lead_id: str
    old_status: str | None = None
    new_status: str
    changed_by: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


class DealStageHistoryRead(BaseModel):
    id: str
    deal_id: str
    old_stage: str | None = None
    new_stage: str
    changed_by: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


# ── Activity Log ────────────────────────────────────────────────────────────


class ActivityCreate(BaseModel):
    partner_id: str | None = None
    user_id: str | None = None
    entity_type: str
    entity_id: str | None = None
    action: str
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ActivityRead(ActivityCreate):
    id: str
    created_at: datetime | None = None


# ── Normalized CRM Records ──────────────────────────────────────────────────


class ExternalLead(BaseModel):
    """A Zoho lead after field mapping and validation."""

    external_id: str
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    company: str | None = None
    status_raw: str | None = None
    lead_source: str | None = None


class ExternalDeal(BaseModel):
    """A Zoho deal (from search results or a webhook) after field mapping."""

    external_id: str
    name: str | None = None
    stage_raw: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    approval_date: datetime | None = None


# ── Webhook Payloads ────────────────────────────────────────────────────────


def _stringify_id(value: Any) -> Any:
    """Zoho sends numeric ids unquoted from some workflow rules."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return value


ZohoId = Annotated[str | None, BeforeValidator(_stringify_id)]


class _ZohoPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PartnerWebhookPayload(_ZohoPayload):
    """Zoho Vendor created/approved: ``{id, VendorName, Email}``."""

    id: ZohoId = None
    vendor_name: str | None = Field(default=None, alias="VendorName")
    email: str | None = Field(default=None, alias="Email")
    partner_type: str | None = Field(default=None, alias="PartnerType")


class ContactWebhookPayload(_ZohoPayload):
    """Zoho contact created under a Vendor: ``{contactId, name, email, partnerId}``."""

    contact_id: ZohoId = Field(default=None, alias="contactId")
    name: str | None = None
    email: str | None = None
    partner_id: ZohoId = Field(default=None, alias="partnerId")


class LeadStatusWebhookPayload(_ZohoPayload):
    """Zoho lead status changed: ``{id, Lead_Status, StrategicPartnerId?}``."""

    id: ZohoId = None
    lead_status: str | None = Field(default=None, alias="Lead_Status")
    strategic_partner_id: ZohoId = Field(default=None, alias="StrategicPartnerId")


class DealWebhookPayload(_ZohoPayload):
    """Zoho deal created or updated."""

    zoho_deal_id: ZohoId = Field(default=None, alias="zohoDealId")
    deal_name: str | None = Field(default=None, alias="Deal_Name")
    stage: str | None = Field(default=None, alias="Stage")
    first_name: str | None = Field(default=None, alias="First_Name")
    last_name: str | None = Field(default=None, alias="Last_Name")
    email: str | None = Field(default=None, alias="Email")
    phone: str | None = Field(default=None, alias="Phone")
    partners_id: ZohoId = Field(default=None, alias="Partners_Id")
    strategic_partner_id: ZohoId = Field(default=None, alias="StrategicPartnerId")
    vendor: dict[str, Any] | None = Field(default=None, alias="Vendor")
    business_name: str | None = Field(default=None, alias="Business_Name")
    account_name: str | dict[str, Any] | None = Field(default=None, alias="Account_Name")
    approval_time_stamp: str | None = Field(default=None, alias="Approval_Time_Stamp")

    def partner_external_id(self) -> str | None:
        """Partner id in priority order: Partners_Id, StrategicPartnerId, Vendor.id."""
        if self.partners_id:
            return self.partners_id
        if self.strategic_partner_id:
            return self.strategic_partner_id
        if self.vendor:
            vendor_id = _stringify_id(self.vendor.get("id"))
            if vendor_id:
                return str(vendor_id)
        return None


# ── Matching & Results ──────────────────────────────────────────────────────


class ContactIdentity(BaseModel):
    """Partial contact identity used to look for the lead being converted."""

    partner_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None


class EntitySyncCounts(BaseModel):
    """Per entity-kind counters for one partner."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class PartnerSyncResult(BaseModel):
    partner_id: str
    partner_name: str
    external_id: str | None = None
    success: bool = True
    leads: EntitySyncCounts = Field(default_factory=EntitySyncCounts)
    deals: EntitySyncCounts = Field(default_factory=EntitySyncCounts)
    errors: list[str] = Field(default_factory=list)


class SyncTotals(BaseModel):
    total_leads: int = 0
    total_deals: int = 0
    leads_created: int = 0
    leads_updated: int = 0
    leads_skipped: int = 0
    deals_created: int = 0
    deals_updated: int = 0
    deals_skipped: int = 0
    errors: int = 0


class SyncRunResult(BaseModel):
    """Aggregate result of a full reconciliation run."""

    success: bool
    trigger: SyncTrigger
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    total_partners: int = 0
    successful_syncs: int = 0
    results: list[PartnerSyncResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    summary: SyncTotals = Field(default_factory=SyncTotals)


class WebhookResult(BaseModel):
    """Outcome of a webhook handler, returned to Zoho as the response body."""

    success: bool = True
    action: str
    message: str
    entity_id: str | None = None
    created: bool = False
    data: dict[str, Any] = Field(default_factory=dict)
