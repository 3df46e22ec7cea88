"""Zoho CRM integration layer.

Provides the abstract CRMClient interface, the ZohoClient implementation with
its injected TokenCache, the lead-status and deal-stage vocabulary maps, and
field mapping between Zoho records and portal schemas.
"""

from src.partner_portal.reconciliation.crm.adapter import CRMClient
from src.partner_portal.reconciliation.crm.stage_map import PortalDealStage, to_portal_stage
from src.partner_portal.reconciliation.crm.status_map import (
    PortalLeadStatus,
    is_converted_status,
    to_external_status,
    to_portal_status,
)
from src.partner_portal.reconciliation.crm.zoho import TokenCache, ZohoClient

__all__ = [
    "CRMClient",
    "ZohoClient",
    "TokenCache",
    "PortalLeadStatus",
    "PortalDealStage",
    "to_portal_status",
    "to_external_status",
    "is_converted_status",
    "to_portal_stage",
]
