"""Lead-to-deal conversion matching.

Zoho does not tell us which portal lead a new deal came from, so the deal's
contact identity is matched against the partner's leads with a prioritized
strategy chain (first match wins, every step scoped to the partner):

1. EMAIL: exact, case-normalized email.
2. NAME_AND_COMPANY: exact first + last name + company, for deal payloads
   where Zoho stripped the email.
3. NAME_ONLY: exact first + last name, newest lead wins. Two customers with
   the same name under one partner can be confused here; the strategy used is
   recorded on every conversion so such matches can be audited.

Callers look up the candidate first, write the deal that records it as
provenance, and only then complete the conversion, which deletes the lead
together with its status history. Deletion is best-effort: a failure is
reported on the outcome and never blocks the deal.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel

from src.partner_portal.reconciliation.schemas import ContactIdentity, LeadRead, MatchStrategy

logger = structlog.get_logger(__name__)


class LeadMatch(BaseModel):
    lead: LeadRead
    strategy: MatchStrategy


class ConversionOutcome(LeadMatch):
    """A matched lead and the result of deleting it."""

    deletion_error: str | None = None

    @property
    def converted_from_lead_id(self) -> str:
        return self.lead.id

    @property
    def lead_deleted(self) -> bool:
        return self.deletion_error is None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ConversionMatcher:
    """Finds and removes the lead a deal was converted from.

    Args:
        repository: PortalRepository (lead reads and deletes).
    """

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def find_candidate(self, identity: ContactIdentity) -> LeadMatch | None:
        """Return the best matching lead for ``identity``, or None."""
        email = _clean(identity.email)
        first_name = _clean(identity.first_name)
        last_name = _clean(identity.last_name)
        company = _clean(identity.company)

        if email:
            lead = await self._repository.find_lead_by_email(identity.partner_id, email.lower())
            if lead is not None:
                return LeadMatch(lead=lead, strategy=MatchStrategy.EMAIL)

        if first_name and last_name and company:
            lead = await self._repository.find_lead_by_name_and_company(
                identity.partner_id, first_name, last_name, company
            )
            if lead is not None:
                return LeadMatch(lead=lead, strategy=MatchStrategy.NAME_AND_COMPANY)

        if first_name and last_name:
            lead = await self._repository.find_latest_lead_by_name(
                identity.partner_id, first_name, last_name
            )
            if lead is not None:
                return LeadMatch(lead=lead, strategy=MatchStrategy.NAME_ONLY)

        return None

    async def convert(self, identity: ContactIdentity) -> ConversionOutcome | None:
        """Match ``identity`` and delete the matched lead in one step.

        Returns:
            ConversionOutcome, or None when no lead matched (standalone deal).
        """
        match = await self.find_candidate(identity)
        if match is None:
            logger.debug("conversion.no_match", partner_id=identity.partner_id)
            return None
        return await self.complete(match)

    async def complete(self, match: LeadMatch) -> ConversionOutcome:
        """Delete the lead of a match whose deal is already stored."""
        deletion_error = await self.delete_converted_lead(match.lead)
        logger.info(
            "conversion.lead_matched",
            partner_id=match.lead.partner_id,
            lead_id=match.lead.id,
            strategy=match.strategy.value,
            deleted=deletion_error is None,
        )
        return ConversionOutcome(
            lead=match.lead,
            strategy=match.strategy,
            deletion_error=deletion_error,
        )

    async def delete_converted_lead(self, lead: LeadRead) -> str | None:
        """Delete a lead's status history and the lead itself.

        Returns:
            None on success, otherwise the error message.
        """
        try:
            await self._repository.delete_lead_status_history(lead.id)
            await self._repository.delete_lead(lead.id)
        except Exception as exc:
            logger.error(
                "conversion.lead_delete_failed",
                lead_id=lead.id,
                error=str(exc),
            )
            return str(exc)
        return None
