"""Outbound lead publishing to Zoho.

Leads submitted in the portal are pushed to Zoho so the sales team works
them there. The first publish creates the Zoho lead and stores its id on the
portal lead; later publishes update the same Zoho record. The submitting
user's id travels as StrategicPartnerId so status webhooks can be attributed
back to that user.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.partner_portal.reconciliation.crm.adapter import CRMClient
from src.partner_portal.reconciliation.crm.field_mapping import build_zoho_lead_payload
from src.partner_portal.reconciliation.errors import (
    EntityNotFoundError,
    InputValidationError,
    UpstreamError,
)
from src.partner_portal.reconciliation.schemas import LeadRead, LeadUpdate, SyncState
from src.partner_portal.reconciliation.versioning import compare_and_set

logger = structlog.get_logger(__name__)


class LeadPublisher:
    """Creates or updates the Zoho copy of a portal lead.

    Args:
        repository: PortalRepository.
        crm_client: CRMClient used for create_lead / update_lead.
    """

    def __init__(self, repository: Any, crm_client: CRMClient) -> None:
        self._repository = repository
        self._crm = crm_client

    async def publish(self, lead_id: str) -> LeadRead:
        """Push one lead to Zoho.

        Returns:
            The lead after its external id and sync state were stored.

        Raises:
            EntityNotFoundError: lead or its partner does not exist.
            InputValidationError: partner is not linked to a Zoho Vendor.
            UpstreamError: Zoho rejected the write (sync_state is set to error).
        """
        lead = await self._repository.get_lead(lead_id)
        if lead is None:
            raise EntityNotFoundError("Lead not found", lead_id=lead_id)
        partner = await self._repository.get_partner(lead.partner_id)
        if partner is None:
            raise EntityNotFoundError("Partner not found", partner_id=lead.partner_id)
        if not partner.external_id:
            raise InputValidationError(
                "Partner is not linked to a Zoho Vendor", partner_id=partner.id
            )

        payload = build_zoho_lead_payload(lead, partner.name, partner.external_id)
        try:
            if lead.external_id:
                await self._crm.update_lead(lead.external_id, payload)
                external_id = lead.external_id
            else:
                external_id = await self._crm.create_lead(payload)
        except UpstreamError as exc:
            logger.error(
                "publish.failed",
                lead_id=lead.id,
                external_id=lead.external_id,
                error=exc.message,
            )
            await self._store(lead, LeadUpdate(sync_state=SyncState.ERROR))
            raise

        updated = await self._store(
            lead,
            LeadUpdate(
                external_id=external_id,
                sync_state=SyncState.SYNCED,
                last_sync_at=datetime.now(timezone.utc),
            ),
        )
        logger.info(
            "publish.lead_published",
            lead_id=lead.id,
            external_id=external_id,
            created=lead.external_id is None,
        )
        return updated

    async def _store(self, lead: LeadRead, update: LeadUpdate) -> LeadRead:
        _, updated = await compare_and_set(
            lead,
            self._repository.get_lead,
            self._repository.update_lead,
            lambda current: update,
        )
        return updated
