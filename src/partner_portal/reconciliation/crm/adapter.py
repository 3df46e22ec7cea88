"""CRM client abstract base class -- the interface the reconciliation engine consumes.

ZohoClient is the production implementation; tests supply in-memory fakes.
Search methods return raw CRM records (dicts with Zoho field names); field
mapping into ExternalLead / ExternalDeal happens in the caller so that one
malformed record cannot fail a whole search.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CRMClient(ABC):
    """Abstract interface for external CRM operations.

    Methods:
        get_access_token: Return a bearer token valid for at least a few minutes.
        search_leads_by_partner: All leads linked to a vendor id.
        search_deals_by_partner: All deals linked to a vendor id.
        create_lead: Create a lead, return its CRM id.
        update_lead: Update lead fields by CRM id.
    """

    @abstractmethod
    async def get_access_token(self) -> str:
        ...

    @abstractmethod
    async def search_leads_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        """Return every lead whose Vendor is the given partner."""
        ...

    @abstractmethod
    async def search_deals_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        """Return every deal whose Vendor is the given partner."""
        ...

    @abstractmethod
    async def create_lead(self, data: dict[str, Any]) -> str:
        """Create a lead, return its CRM id."""
        ...

    @abstractmethod
    async def update_lead(self, external_id: str, data: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        """Release network resources. Default is a no-op."""
        return None
