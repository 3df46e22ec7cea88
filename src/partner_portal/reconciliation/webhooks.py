"""Inbound Zoho webhook processing.

WebhookIngestor applies the Zoho workflow events (partner approved, contact
created, lead status changed, deal created/updated) to portal storage. Zoho
delivers at least once, so every handler is idempotent: replaying an event
leaves the same end state and never adds a second history row.

Handlers raise ReconciliationError subclasses; the API layer turns those into
the structured ``{error, message}`` responses Zoho sees.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from src.partner_portal.core.monitoring import crm_lead_conversions_total
from src.partner_portal.reconciliation.crm.field_mapping import deal_from_webhook
from src.partner_portal.reconciliation.crm.stage_map import PortalDealStage, to_portal_stage
from src.partner_portal.reconciliation.crm.status_map import (
    is_converted_status,
    normalize_portal_status,
    to_portal_status,
)
from src.partner_portal.reconciliation.errors import (
    DuplicateRecordError,
    EntityNotFoundError,
    InputValidationError,
)
from src.partner_portal.reconciliation.history import HistoryInvariantEnforcer
from src.partner_portal.reconciliation.matching import (
    ConversionMatcher,
    ConversionOutcome,
    LeadMatch,
)
from src.partner_portal.reconciliation.notifications import NotificationSink
from src.partner_portal.reconciliation.schemas import (
    ActivityAction,
    ActivityCreate,
    ContactIdentity,
    ContactWebhookPayload,
    DealCreate,
    DealRead,
    DealUpdate,
    DealWebhookPayload,
    ExternalDeal,
    HistoryEntry,
    LeadRead,
    LeadStatusWebhookPayload,
    LeadUpdate,
    PartnerRead,
    PartnerWebhookPayload,
    SyncState,
    WebhookResult,
)
from src.partner_portal.reconciliation.versioning import compare_and_set

logger = structlog.get_logger(__name__)

_DEAL_MIRRORED_FIELDS = (
    "name",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "approval_date",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _identity(deal: ExternalDeal, partner_id: str) -> ContactIdentity:
    return ContactIdentity(
        partner_id=partner_id,
        email=deal.email,
        first_name=deal.first_name,
        last_name=deal.last_name,
        company=deal.company,
    )


class WebhookIngestor:
    """Applies Zoho webhook events to portal storage.

    Args:
        repository: PortalRepository.
        matcher: ConversionMatcher used on both deal create and deal update.
        provisioner: AccountProvisioner for partner and sub user onboarding.
        notifier: NotificationSink for conversion notices.
    """

    def __init__(
        self,
        repository: Any,
        matcher: ConversionMatcher,
        provisioner: Any,
        notifier: NotificationSink,
    ) -> None:
        self._repository = repository
        self._matcher = matcher
        self._provisioner = provisioner
        self._notifier = notifier
        self._lead_history = HistoryInvariantEnforcer.for_lead_status(repository)
        self._deal_history = HistoryInvariantEnforcer.for_deal_stage(repository)

    # ── Partner Events ──────────────────────────────────────────────────────

    async def handle_partner_event(self, payload: PartnerWebhookPayload) -> WebhookResult:
        """Provision a partner and its admin user for an approved Zoho Vendor.

        Raises:
            InputValidationError: id, VendorName or Email missing.
            DuplicateRecordError: the admin email belongs to another partner.
        """
        if not payload.id or not payload.vendor_name or not payload.email:
            logger.warning(
                "webhook.partner_invalid",
                received=payload.model_dump(by_alias=True),
            )
            raise InputValidationError(
                "id, VendorName and Email are required",
                received=payload.model_dump(by_alias=True),
            )

        existing = await self._repository.get_partner_by_external_id(payload.id)
        if existing is not None:
            logger.info("webhook.partner_exists", partner_id=existing.id, external_id=payload.id)
            return self._partner_exists(existing)

        try:
            partner, user = await self._provisioner.provision_partner(
                payload.id, payload.vendor_name, payload.email
            )
        except DuplicateRecordError:
            existing = await self._repository.get_partner_by_external_id(payload.id)
            if existing is None:
                raise
            logger.info("webhook.partner_exists", partner_id=existing.id, external_id=payload.id)
            return self._partner_exists(existing)

        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=partner.id,
                user_id=user.id,
                entity_type="partner",
                entity_id=partner.id,
                action=ActivityAction.PARTNER_CREATED.value,
                description=f"Partner {partner.name} provisioned from Zoho",
                metadata={"external_id": payload.id, "partner_type": payload.partner_type},
            )
        )
        logger.info(
            "webhook.partner_created",
            partner_id=partner.id,
            user_id=user.id,
            external_id=payload.id,
        )
        return WebhookResult(
            action="partner_created",
            message="Partner created",
            entity_id=partner.id,
            created=True,
            data={"partner_id": partner.id, "user_id": user.id},
        )

    @staticmethod
    def _partner_exists(partner: PartnerRead) -> WebhookResult:
        return WebhookResult(
            action="partner_exists",
            message="Partner already exists",
            entity_id=partner.id,
            data={"partner_id": partner.id},
        )

    # ── Contact Events ──────────────────────────────────────────────────────

    async def handle_contact_event(self, payload: ContactWebhookPayload) -> WebhookResult:
        """Provision a sub user for a Zoho contact created under a Vendor.

        Idempotent on the contact email: a user already holding it under the
        same partner is reported as existing.

        Raises:
            InputValidationError: partnerId, name or email missing.
            EntityNotFoundError: partnerId is not linked to any partner.
            DuplicateRecordError: the email belongs to another partner's user.
        """
        if not payload.partner_id or not payload.name or not payload.email:
            logger.warning(
                "webhook.contact_invalid",
                received=payload.model_dump(by_alias=True),
            )
            raise InputValidationError(
                "partnerId, name and email are required",
                received=payload.model_dump(by_alias=True),
            )

        partner = await self._repository.get_partner_by_external_id(payload.partner_id)
        if partner is None:
            logger.warning(
                "webhook.contact_partner_not_found",
                partner_external_id=payload.partner_id,
                contact_id=payload.contact_id,
            )
            raise EntityNotFoundError(
                "Parent partner not found", partner_external_id=payload.partner_id
            )

        existing = await self._repository.get_user_by_email(payload.email)
        if existing is None:
            try:
                user = await self._provisioner.provision_sub_user(
                    partner.id, payload.name, payload.email
                )
            except DuplicateRecordError:
                existing = await self._repository.get_user_by_email(payload.email)
                if existing is None:
                    raise
        if existing is not None:
            if existing.partner_id != partner.id:
                raise DuplicateRecordError(
                    "Contact email belongs to another partner",
                    email=payload.email,
                    contact_id=payload.contact_id,
                )
            logger.info("webhook.contact_exists", user_id=existing.id, partner_id=partner.id)
            return WebhookResult(
                action="contact_exists",
                message="Contact already exists",
                entity_id=existing.id,
                data={"user_id": existing.id, "partner_id": partner.id},
            )

        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=partner.id,
                user_id=user.id,
                entity_type="user",
                entity_id=user.id,
                action=ActivityAction.SUB_ACCOUNT_CREATED.value,
                description=f"Sub-account created for {payload.name.strip()} via Zoho webhook",
                metadata={"zoho_contact_id": payload.contact_id},
            )
        )
        logger.info(
            "webhook.contact_created",
            user_id=user.id,
            partner_id=partner.id,
            contact_id=payload.contact_id,
        )
        return WebhookResult(
            action="sub_account_created",
            message="Contact user created",
            entity_id=user.id,
            created=True,
            data={"user_id": user.id, "partner_id": partner.id, "email": user.email},
        )

    # ── Lead Status Events ──────────────────────────────────────────────────

    async def handle_lead_status_event(
        self, payload: LeadStatusWebhookPayload
    ) -> WebhookResult:
        """Apply a Zoho Lead_Status change to the matching portal lead.

        A converted status deletes the lead and its history and returns
        immediately. Any other status is mapped to the portal vocabulary and
        written only when the mapped status differs from the stored one.

        Raises:
            InputValidationError: id missing.
            EntityNotFoundError: no lead with this Zoho id.
        """
        if not payload.id:
            logger.warning(
                "webhook.lead_status_invalid",
                received=payload.model_dump(by_alias=True),
            )
            raise InputValidationError(
                "Lead id is required", received=payload.model_dump(by_alias=True)
            )

        lead = await self._repository.get_lead_by_external_id(payload.id)
        if lead is None:
            logger.warning("webhook.lead_not_found", external_id=payload.id)
            raise EntityNotFoundError("Lead not found", external_id=payload.id)

        raw_status = (payload.lead_status or "").strip() or None
        actor_id = await self._resolve_lead_actor(lead, payload.strategic_partner_id)

        if is_converted_status(raw_status):
            return await self._delete_converted_lead(lead, raw_status, actor_id)

        new_status = to_portal_status(raw_status)

        def build(current: LeadRead) -> LeadUpdate | None:
            changes: dict[str, Any] = {}
            if current.status != new_status.value:
                changes["status"] = new_status.value
            if current.external_status_raw != raw_status:
                changes["external_status_raw"] = raw_status
            return LeadUpdate(**changes) if changes else None

        base, updated = await compare_and_set(
            lead, self._repository.get_lead, self._repository.update_lead, build
        )
        old_status = normalize_portal_status(base.status)

        if updated is None or old_status == new_status:
            logger.debug(
                "webhook.lead_status_unchanged",
                lead_id=lead.id,
                status=new_status.value,
            )
            return WebhookResult(
                action="lead_status_unchanged",
                message="Lead status unchanged",
                entity_id=lead.id,
                data={"status": new_status.value},
            )

        await self._lead_history.replace(
            lead.id,
            HistoryEntry(
                old_value=old_status.value,
                new_value=new_status.value,
                changed_by=actor_id,
                notes=f"Status updated from Zoho: {raw_status}",
            ),
        )
        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=lead.partner_id,
                user_id=actor_id,
                entity_type="lead",
                entity_id=lead.id,
                action=ActivityAction.LEAD_STATUS_UPDATED.value,
                description=(
                    f"Lead {lead.first_name} {lead.last_name} moved from "
                    f"{old_status.value} to {new_status.value}"
                ),
                metadata={
                    "lead_id": lead.id,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "external_status_raw": raw_status,
                },
            )
        )
        logger.info(
            "webhook.lead_status_updated",
            lead_id=lead.id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return WebhookResult(
            action="lead_status_updated",
            message="Lead status updated",
            entity_id=lead.id,
            data={"old_status": old_status.value, "new_status": new_status.value},
        )

    async def _resolve_lead_actor(
        self, lead: LeadRead, strategic_partner_id: str | None
    ) -> str | None:
        """Who the change is attributed to.

        Outbound leads carry the submitting user's id as StrategicPartnerId.
        Zoho-originated leads may carry a Vendor id instead, which resolves to
        that partner's admin. Otherwise the lead's creator is used.
        """
        if strategic_partner_id:
            if _is_uuid(strategic_partner_id):
                user = await self._repository.get_user(strategic_partner_id)
                if user is not None:
                    return user.id
            partner = await self._repository.get_partner_by_external_id(strategic_partner_id)
            if partner is not None:
                admin_id = await self._repository.get_partner_admin_user_id(partner.id)
                if admin_id:
                    return admin_id
        return lead.created_by_user_id

    async def _delete_converted_lead(
        self, lead: LeadRead, raw_status: str | None, actor_id: str | None
    ) -> WebhookResult:
        old_status = normalize_portal_status(lead.status)
        removed = await self._repository.delete_lead_status_history(lead.id)
        deleted = await self._repository.delete_lead(lead.id)

        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=lead.partner_id,
                user_id=actor_id,
                entity_type="lead",
                entity_id=lead.id,
                action=ActivityAction.LEAD_CONVERTED.value,
                description=f"Lead {lead.first_name} {lead.last_name} converted in Zoho",
                metadata={
                    "lead_id": lead.id,
                    "old_status": old_status.value,
                    "external_status_raw": raw_status,
                    "external_id": lead.external_id,
                    "history_rows_removed": removed,
                },
            )
        )
        crm_lead_conversions_total.labels(source="webhook", strategy="status").inc()
        logger.info(
            "webhook.lead_converted",
            lead_id=lead.id,
            old_status=old_status.value,
            deleted=deleted,
        )
        return WebhookResult(
            action="lead_deleted",
            message="Lead converted and removed",
            entity_id=lead.id,
            data={"old_status": old_status.value, "external_status_raw": raw_status},
        )

    # ── Deal Events ─────────────────────────────────────────────────────────

    async def handle_deal_event(self, payload: DealWebhookPayload) -> WebhookResult:
        """Create or update a deal keyed on its Zoho id.

        Raises:
            InputValidationError: zohoDealId or every partner field missing,
                or Deal_Name missing for a deal not seen before.
            EntityNotFoundError: the partner id is not linked to any partner.
        """
        deal = deal_from_webhook(payload)

        partner_external_id = payload.partner_external_id()
        if not partner_external_id:
            logger.warning(
                "webhook.deal_partner_missing",
                zoho_deal_id=deal.external_id,
                received=payload.model_dump(by_alias=True),
            )
            raise InputValidationError(
                "Partners_Id, StrategicPartnerId or Vendor.id is required",
                zoho_deal_id=deal.external_id,
            )

        partner = await self._repository.get_partner_by_external_id(partner_external_id)
        if partner is None:
            logger.warning(
                "webhook.deal_partner_not_found",
                zoho_deal_id=deal.external_id,
                partner_external_id=partner_external_id,
            )
            raise EntityNotFoundError(
                "Partner not found", partner_external_id=partner_external_id
            )

        stage = to_portal_stage(deal.stage_raw) if deal.stage_raw else None

        existing = await self._repository.get_deal_by_external_id(deal.external_id)
        if existing is not None:
            return await self._update_deal(existing, deal, partner, stage)

        if not deal.name:
            raise InputValidationError(
                "Deal_Name is required to create a deal", zoho_deal_id=deal.external_id
            )
        return await self._create_deal(deal, partner, stage or PortalDealStage.IN_UNDERWRITING)

    async def _create_deal(
        self, deal: ExternalDeal, partner: PartnerRead, stage: PortalDealStage
    ) -> WebhookResult:
        # The lead is only deleted once the deal that records it is stored.
        match = await self._matcher.find_candidate(_identity(deal, partner.id))
        owner_id = await self._resolve_deal_owner(partner, match, deal.external_id)

        try:
            created = await self._repository.create_deal(
                DealCreate(
                    external_id=deal.external_id,
                    partner_id=partner.id,
                    created_by_user_id=owner_id,
                    converted_from_lead_id=match.lead.id if match else None,
                    name=deal.name,
                    first_name=deal.first_name,
                    last_name=deal.last_name,
                    email=deal.email,
                    phone=deal.phone,
                    company=deal.company,
                    stage=stage.value,
                    external_stage_raw=deal.stage_raw,
                    approval_date=deal.approval_date,
                    sync_state=SyncState.SYNCED,
                    last_sync_at=_utcnow(),
                )
            )
        except DuplicateRecordError:
            # A concurrent delivery inserted it first.
            existing = await self._repository.get_deal_by_external_id(deal.external_id)
            if existing is None:
                raise
            logger.info("webhook.deal_create_raced", deal_id=existing.id)
            return await self._update_deal(existing, deal, partner, stage, match)

        outcome = await self._matcher.complete(match) if match is not None else None
        if outcome is not None:
            notes = (
                f"Deal created from converted lead {outcome.converted_from_lead_id} "
                f"(matched by {outcome.strategy.value})"
            )
        else:
            notes = "Deal created from Zoho"
        await self._deal_history.replace(
            created.id,
            HistoryEntry(old_value=None, new_value=stage.value, changed_by=owner_id, notes=notes),
        )

        if outcome is not None:
            await self._record_conversion(created, outcome)

        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=partner.id,
                user_id=owner_id,
                entity_type="deal",
                entity_id=created.id,
                action=ActivityAction.DEAL_CREATED.value,
                description=f"Deal {created.name} created from Zoho",
                metadata={
                    "external_id": created.external_id,
                    "stage": created.stage,
                    "converted_from_lead_id": created.converted_from_lead_id,
                },
            )
        )
        logger.info(
            "webhook.deal_created",
            deal_id=created.id,
            external_id=created.external_id,
            stage=created.stage,
            converted=outcome is not None,
        )
        return WebhookResult(
            action="deal_created",
            message="Deal created",
            entity_id=created.id,
            created=True,
            data=self._deal_data(created, outcome),
        )

    async def _update_deal(
        self,
        existing: DealRead,
        deal: ExternalDeal,
        partner: PartnerRead,
        stage: PortalDealStage | None,
        match: LeadMatch | None = None,
    ) -> WebhookResult:
        # Zoho may create the deal before filling in the contact, so matching
        # is retried until the deal is linked to a lead.
        if match is None and existing.converted_from_lead_id is None:
            match = await self._matcher.find_candidate(_identity(deal, partner.id))

        now = _utcnow()

        def build(current: DealRead) -> DealUpdate | None:
            changes: dict[str, Any] = {}
            for field in _DEAL_MIRRORED_FIELDS:
                value = getattr(deal, field)
                if value is not None and value != getattr(current, field):
                    changes[field] = value
            if stage is not None and current.stage != stage.value:
                changes["stage"] = stage.value
            if deal.stage_raw is not None and current.external_stage_raw != deal.stage_raw:
                changes["external_stage_raw"] = deal.stage_raw
            if current.partner_id != partner.id:
                changes["partner_id"] = partner.id
            if match is not None and current.converted_from_lead_id is None:
                changes["converted_from_lead_id"] = match.lead.id
                if match.lead.created_by_user_id:
                    changes["created_by_user_id"] = match.lead.created_by_user_id
            if not changes:
                return None
            changes["sync_state"] = SyncState.SYNCED
            changes["last_sync_at"] = now
            return DealUpdate(**changes)

        base, updated = await compare_and_set(
            existing, self._repository.get_deal, self._repository.update_deal, build
        )
        if updated is None:
            logger.debug("webhook.deal_unchanged", deal_id=existing.id)
            return WebhookResult(
                action="deal_unchanged",
                message="Deal unchanged",
                entity_id=existing.id,
                data=self._deal_data(base, None),
            )

        stage_changed = base.stage != updated.stage
        if stage_changed:
            await self._deal_history.replace(
                updated.id,
                HistoryEntry(
                    old_value=base.stage,
                    new_value=updated.stage,
                    changed_by=updated.created_by_user_id,
                    notes=f"Stage updated from Zoho: {deal.stage_raw}",
                ),
            )

        linked = (
            match is not None
            and base.converted_from_lead_id is None
            and updated.converted_from_lead_id == match.lead.id
        )
        outcome = await self._matcher.complete(match) if linked else None
        if outcome is not None:
            await self._record_conversion(updated, outcome)

        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=updated.partner_id,
                user_id=updated.created_by_user_id,
                entity_type="deal",
                entity_id=updated.id,
                action=ActivityAction.DEAL_UPDATED.value,
                description=f"Deal {updated.name} updated from Zoho",
                metadata={
                    "external_id": updated.external_id,
                    "old_stage": base.stage,
                    "new_stage": updated.stage,
                    "stage_changed": stage_changed,
                },
            )
        )
        logger.info(
            "webhook.deal_updated",
            deal_id=updated.id,
            stage_changed=stage_changed,
            converted=linked,
        )
        return WebhookResult(
            action="deal_updated",
            message="Deal updated",
            entity_id=updated.id,
            data=self._deal_data(updated, outcome),
        )

    async def _resolve_deal_owner(
        self,
        partner: PartnerRead,
        match: LeadMatch | None,
        zoho_deal_id: str,
    ) -> str | None:
        """Converted lead's creator, else the partner admin, else None."""
        if match is not None and match.lead.created_by_user_id:
            return match.lead.created_by_user_id
        admin_id = await self._repository.get_partner_admin_user_id(partner.id)
        if admin_id:
            if match is None:
                logger.warning(
                    "webhook.deal_owner_admin_fallback",
                    partner_id=partner.id,
                    zoho_deal_id=zoho_deal_id,
                )
            return admin_id
        logger.warning(
            "webhook.deal_owner_unresolved",
            partner_id=partner.id,
            zoho_deal_id=zoho_deal_id,
        )
        return None

    async def _record_conversion(self, deal: DealRead, outcome: ConversionOutcome) -> None:
        lead = outcome.lead
        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=deal.partner_id,
                user_id=deal.created_by_user_id,
                entity_type="lead",
                entity_id=lead.id,
                action=ActivityAction.LEAD_CONVERTED.value,
                description=(
                    f"Lead {lead.first_name} {lead.last_name} converted to deal {deal.name}"
                ),
                metadata={
                    "lead_id": lead.id,
                    "deal_id": deal.id,
                    "external_deal_id": deal.external_id,
                    "old_status": lead.status,
                    "match_strategy": outcome.strategy.value,
                    "lead_deleted": outcome.lead_deleted,
                },
            )
        )
        if outcome.deletion_error is not None:
            await self._repository.insert_activity(
                ActivityCreate(
                    partner_id=deal.partner_id,
                    user_id=deal.created_by_user_id,
                    entity_type="lead",
                    entity_id=lead.id,
                    action=ActivityAction.LEAD_CONVERSION_CLEANUP_FAILED.value,
                    description="Converted lead could not be removed",
                    metadata={
                        "lead_id": lead.id,
                        "deal_id": deal.id,
                        "error": outcome.deletion_error,
                    },
                )
            )
        crm_lead_conversions_total.labels(
            source="webhook", strategy=outcome.strategy.value
        ).inc()

        if not deal.created_by_user_id:
            return
        try:
            await self._notifier.notify(
                deal.created_by_user_id,
                f"Your lead {lead.first_name} {lead.last_name} was converted to deal {deal.name}",
                {
                    "type": "lead_converted",
                    "lead_id": lead.id,
                    "deal_id": deal.id,
                    "stage": deal.stage,
                },
            )
        except Exception as exc:
            logger.warning(
                "webhook.notification_failed",
                user_id=deal.created_by_user_id,
                deal_id=deal.id,
                error=str(exc),
            )

    @staticmethod
    def _deal_data(deal: DealRead, outcome: ConversionOutcome | None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "external_id": deal.external_id,
            "stage": deal.stage,
            "converted_from_lead_id": deal.converted_from_lead_id,
        }
        if outcome is not None:
            data["match_strategy"] = outcome.strategy.value
            data["lead_deleted"] = outcome.lead_deleted
        return data
