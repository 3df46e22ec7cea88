"""Zoho deal stage to portal stage group mapping.

Deal stages only flow inbound; the portal never writes a stage to Zoho.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType


class PortalDealStage(str, Enum):
    """Deal stage groups shown in the partner portal."""

    IN_UNDERWRITING = "In Underwriting"
    CONDITIONALLY_APPROVED = "Conditionally Approved"
    APPROVED = "Approved"
    LOST = "Lost"
    DECLINED = "Declined"
    CLOSED = "Closed"


DEFAULT_PORTAL_STAGE = PortalDealStage.IN_UNDERWRITING

EXTERNAL_TO_PORTAL: Mapping[str, PortalDealStage] = MappingProxyType({
    "Sent to Underwriting": PortalDealStage.IN_UNDERWRITING,
    "App Pended": PortalDealStage.IN_UNDERWRITING,
    "Conditionally Approved": PortalDealStage.CONDITIONALLY_APPROVED,
    "Approved": PortalDealStage.APPROVED,
    "App Withdrawn": PortalDealStage.LOST,
    "Merchant Unresponsive": PortalDealStage.LOST,
    "Dead/Do Not contact": PortalDealStage.LOST,
    "Dead / Do Not Contact": PortalDealStage.LOST,
    "Dead/Do Not Contact": PortalDealStage.LOST,
    "Declined": PortalDealStage.DECLINED,
    "Approved - Closed": PortalDealStage.CLOSED,
})

STAGE_CATEGORIES: Mapping[PortalDealStage, str] = MappingProxyType({
    PortalDealStage.IN_UNDERWRITING: "review",
    PortalDealStage.CONDITIONALLY_APPROVED: "conditional",
    PortalDealStage.APPROVED: "success",
    PortalDealStage.LOST: "closed",
    PortalDealStage.DECLINED: "rejected",
    PortalDealStage.CLOSED: "final",
})


def to_portal_stage(external_raw: str | None) -> PortalDealStage:
    """Map a Zoho Stage to a portal stage group; unknown maps to DEFAULT_PORTAL_STAGE."""
    if not external_raw:
        return DEFAULT_PORTAL_STAGE
    raw = external_raw.strip()
    if raw in EXTERNAL_TO_PORTAL:
        return EXTERNAL_TO_PORTAL[raw]
    try:
        # Already a portal value (e.g. replayed from local storage)
        return PortalDealStage(raw)
    except ValueError:
        return DEFAULT_PORTAL_STAGE


def all_portal_stages() -> list[PortalDealStage]:
    return list(PortalDealStage)


def stage_category(stage: PortalDealStage | str) -> str:
    return STAGE_CATEGORIES[to_portal_stage(stage)]
