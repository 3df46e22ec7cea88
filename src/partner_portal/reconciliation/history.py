"""Single-current-row history enforcement for lead status and deal stage.

Each lead and deal keeps only its latest transition: every write deletes the
entity's existing history rows and inserts exactly one new row. The unique
owner column on both history tables backs this up in storage; if a concurrent
writer slips a row in between our delete and insert, the insert fails with
DuplicateRecordError and the replace is run once more.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

import structlog

from src.partner_portal.reconciliation.errors import DuplicateRecordError
from src.partner_portal.reconciliation.schemas import HistoryEntry

logger = structlog.get_logger(__name__)

RowT = TypeVar("RowT")


class HistoryInvariantEnforcer(Generic[RowT]):
    """Replace all history rows of an entity with exactly one new row.

    Args:
        entity_kind: Label used in logs ("lead_status", "deal_stage").
        delete_all: Deletes every history row of an entity id.
        insert_one: Inserts one row for an entity id.
    """

    def __init__(
        self,
        entity_kind: str,
        delete_all: Callable[[str], Awaitable[int]],
        insert_one: Callable[[str, HistoryEntry], Awaitable[RowT]],
    ) -> None:
        self._entity_kind = entity_kind
        self._delete_all = delete_all
        self._insert_one = insert_one

    @classmethod
    def for_lead_status(cls, repository: Any) -> HistoryInvariantEnforcer:
        return cls(
            "lead_status",
            repository.delete_lead_status_history,
            repository.insert_lead_status_history,
        )

    @classmethod
    def for_deal_stage(cls, repository: Any) -> HistoryInvariantEnforcer:
        return cls(
            "deal_stage",
            repository.delete_deal_stage_history,
            repository.insert_deal_stage_history,
        )

    async def replace(self, entity_id: str, entry: HistoryEntry) -> RowT:
        """Leave exactly one history row (``entry``) for ``entity_id``."""
        removed = await self._delete_all(entity_id)
        try:
            row = await self._insert_one(entity_id, entry)
        except DuplicateRecordError:
            logger.warning(
                "history.concurrent_insert",
                entity_kind=self._entity_kind,
                entity_id=entity_id,
            )
            removed += await self._delete_all(entity_id)
            row = await self._insert_one(entity_id, entry)

        logger.debug(
            "history.replaced",
            entity_kind=self._entity_kind,
            entity_id=entity_id,
            removed=removed,
            new_value=entry.new_value,
        )
        return row
