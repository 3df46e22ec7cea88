"""Lead status vocabulary mapping between the portal and Zoho CRM.

The portal exposes six lead statuses; Zoho carries a larger, frequently
edited set. Lookups never raise: anything the table does not know maps to
DEFAULT_PORTAL_STATUS (inbound) or DEFAULT_EXTERNAL_STATUS (outbound).

Converted statuses are not mapped at all. They are detected separately via
is_converted_status() because they trigger lead deletion, not an update.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType


class PortalLeadStatus(str, Enum):
    """Lead statuses shown in the partner portal."""

    NEW = "New"
    CONTACT_ATTEMPT = "Contact Attempt"
    CONTACTED_IN_PROGRESS = "Contacted - In Progress"
    SENT_FOR_SIGNATURE = "Sent for Signature"
    APPLICATION_SIGNED = "Application Signed"
    LOST = "Lost"


DEFAULT_PORTAL_STATUS = PortalLeadStatus.NEW
DEFAULT_EXTERNAL_STATUS = "New"

# Zoho Lead_Status -> portal status
EXTERNAL_TO_PORTAL: Mapping[str, PortalLeadStatus] = MappingProxyType({
    "New": PortalLeadStatus.NEW,
    "Contact Attempt 1": PortalLeadStatus.CONTACT_ATTEMPT,
    "Contact Attempt 2": PortalLeadStatus.CONTACT_ATTEMPT,
    "Contact Attempt 3": PortalLeadStatus.CONTACT_ATTEMPT,
    "Contact Attempt 4": PortalLeadStatus.CONTACT_ATTEMPT,
    "Contact Attempt 5": PortalLeadStatus.CONTACT_ATTEMPT,
    "Interested - Needs Follow Up": PortalLeadStatus.CONTACTED_IN_PROGRESS,
    "Sent Pre-App": PortalLeadStatus.CONTACTED_IN_PROGRESS,
    "Pre-App Received": PortalLeadStatus.CONTACTED_IN_PROGRESS,
    "Awaiting Signature - No Motion.io": PortalLeadStatus.SENT_FOR_SIGNATURE,
    "Send to Motion.io": PortalLeadStatus.SENT_FOR_SIGNATURE,
    "Signed Application": PortalLeadStatus.APPLICATION_SIGNED,
    "Notify Apps Team": PortalLeadStatus.APPLICATION_SIGNED,
    "Lost": PortalLeadStatus.LOST,
    "Junk": PortalLeadStatus.LOST,
})

# Portal status -> Zoho Lead_Status written on outbound create/update
PORTAL_TO_EXTERNAL: Mapping[PortalLeadStatus, str] = MappingProxyType({
    PortalLeadStatus.NEW: "New",
    PortalLeadStatus.CONTACT_ATTEMPT: "Contact Attempt 1",
    PortalLeadStatus.CONTACTED_IN_PROGRESS: "Interested - Needs Follow Up",
    PortalLeadStatus.SENT_FOR_SIGNATURE: "Send to Motion.io",
    PortalLeadStatus.APPLICATION_SIGNED: "Signed Application",
    PortalLeadStatus.LOST: "Lost",
})

# Values written by earlier portal releases, still present on old rows
LEGACY_PORTAL_TO_CURRENT: Mapping[str, PortalLeadStatus] = MappingProxyType({
    "Pre-Vet / New Lead": PortalLeadStatus.NEW,
    "Lead": PortalLeadStatus.NEW,
    "Contacted": PortalLeadStatus.CONTACT_ATTEMPT,
    "Sent for Signature / Submitted": PortalLeadStatus.SENT_FOR_SIGNATURE,
    "Application Submitted": PortalLeadStatus.SENT_FOR_SIGNATURE,
    "Approved": PortalLeadStatus.APPLICATION_SIGNED,
    "Declined": PortalLeadStatus.LOST,
    "Dead / Withdrawn": PortalLeadStatus.LOST,
})

CONVERTED_STATUSES: frozenset[str] = frozenset({"Converted", "Converted - Deal", "Convert"})

STATUS_CATEGORIES: Mapping[PortalLeadStatus, str] = MappingProxyType({
    PortalLeadStatus.NEW: "new",
    PortalLeadStatus.CONTACT_ATTEMPT: "in_progress",
    PortalLeadStatus.CONTACTED_IN_PROGRESS: "in_progress",
    PortalLeadStatus.SENT_FOR_SIGNATURE: "waiting",
    PortalLeadStatus.APPLICATION_SIGNED: "success",
    PortalLeadStatus.LOST: "closed",
})


def to_portal_status(external_raw: str | None) -> PortalLeadStatus:
    """Map a Zoho Lead_Status to the portal vocabulary.

    Unknown and empty values map to DEFAULT_PORTAL_STATUS.
    """
    if not external_raw:
        return DEFAULT_PORTAL_STATUS
    return EXTERNAL_TO_PORTAL.get(external_raw.strip(), DEFAULT_PORTAL_STATUS)


def to_external_status(portal: PortalLeadStatus | str | None) -> str:
    """Map a portal status to the Zoho Lead_Status used on outbound writes."""
    if not portal:
        return DEFAULT_EXTERNAL_STATUS
    try:
        status = PortalLeadStatus(portal)
    except ValueError:
        return DEFAULT_EXTERNAL_STATUS
    return PORTAL_TO_EXTERNAL.get(status, DEFAULT_EXTERNAL_STATUS)


def is_converted_status(external_raw: str | None) -> bool:
    """Return True when a Zoho status means the lead became a deal."""
    if not external_raw:
        return False
    return external_raw.strip() in CONVERTED_STATUSES


def normalize_portal_status(value: str | None) -> PortalLeadStatus:
    """Coerce a stored status (current, legacy or raw Zoho) to a portal status."""
    raw = (value or "").strip()
    if not raw:
        return DEFAULT_PORTAL_STATUS
    try:
        return PortalLeadStatus(raw)
    except ValueError:
        pass
    if raw in LEGACY_PORTAL_TO_CURRENT:
        return LEGACY_PORTAL_TO_CURRENT[raw]
    return to_portal_status(raw)


def all_portal_statuses() -> list[PortalLeadStatus]:
    return list(PortalLeadStatus)


def status_category(status: PortalLeadStatus | str) -> str:
    """Return the UI grouping for a status (new, in_progress, waiting, success, closed)."""
    return STATUS_CATEGORIES[normalize_portal_status(status)]
