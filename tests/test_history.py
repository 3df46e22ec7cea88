"""Unit tests for HistoryInvariantEnforcer (one current history row per entity)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.partner_portal.reconciliation.errors import DuplicateRecordError
from src.partner_portal.reconciliation.history import HistoryInvariantEnforcer
from src.partner_portal.reconciliation.schemas import HistoryEntry


@pytest.mark.asyncio
async def test_replace_leaves_exactly_one_row(repo, partner):
    lead = repo.add_lead(partner.id)
    enforcer = HistoryInvariantEnforcer.for_lead_status(repo)

    await enforcer.replace(lead.id, HistoryEntry(old_value="New", new_value="Contact Attempt"))
    await enforcer.replace(lead.id, HistoryEntry(old_value="Contact Attempt", new_value="Lost"))

    rows = await repo.list_lead_status_history(lead.id)
    assert len(rows) == 1
    assert rows[0].old_status == "Contact Attempt"
    assert rows[0].new_status == "Lost"


@pytest.mark.asyncio
async def test_deal_stage_enforcer_uses_deal_tables(repo):
    enforcer = HistoryInvariantEnforcer.for_deal_stage(repo)

    row = await enforcer.replace("deal-1", HistoryEntry(new_value="Approved", notes="created"))

    assert row.deal_id == "deal-1"
    assert row.old_stage is None
    assert [r.new_stage for r in await repo.list_deal_stage_history("deal-1")] == ["Approved"]
    assert await repo.list_lead_status_history("deal-1") == []


@pytest.mark.asyncio
async def test_concurrent_insert_is_retried_once():
    """A row slipped in between delete and insert is cleared and the insert rerun."""
    delete_all = AsyncMock(side_effect=[0, 1])
    insert_one = AsyncMock(side_effect=[DuplicateRecordError("exists"), "row"])
    enforcer = HistoryInvariantEnforcer("lead_status", delete_all, insert_one)

    row = await enforcer.replace("lead-1", HistoryEntry(new_value="Lost"))

    assert row == "row"
    assert delete_all.await_count == 2
    assert insert_one.await_count == 2


@pytest.mark.asyncio
async def test_second_duplicate_propagates():
    delete_all = AsyncMock(return_value=0)
    insert_one = AsyncMock(side_effect=DuplicateRecordError("exists"))
    enforcer = HistoryInvariantEnforcer("deal_stage", delete_all, insert_one)

    with pytest.raises(DuplicateRecordError):
        await enforcer.replace("deal-1", HistoryEntry(new_value="Approved"))
    assert insert_one.await_count == 2
