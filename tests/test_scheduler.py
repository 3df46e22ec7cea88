"""Tests for SyncScheduler: cron wiring, overlap handling and status snapshot."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.partner_portal.reconciliation.errors import SyncAlreadyRunningError
from src.partner_portal.reconciliation.scheduler import JOB_ID, SyncScheduler
from src.partner_portal.reconciliation.schemas import SyncRunResult, SyncTrigger


def _make_reconciler(**overrides) -> MagicMock:
    reconciler = MagicMock()
    reconciler.run_all = AsyncMock(
        return_value=SyncRunResult(success=True, trigger=SyncTrigger.SCHEDULED)
    )
    reconciler.is_running = False
    reconciler.last_result = None
    for key, value in overrides.items():
        setattr(reconciler, key, value)
    return reconciler


class TestRunScheduled:
    @pytest.mark.asyncio
    async def test_runs_with_scheduled_trigger(self):
        reconciler = _make_reconciler()
        scheduler = SyncScheduler(reconciler)

        result = await scheduler.run_scheduled()

        assert result.success is True
        reconciler.run_all.assert_awaited_once_with(SyncTrigger.SCHEDULED)

    @pytest.mark.asyncio
    async def test_skips_while_run_in_flight(self):
        reconciler = _make_reconciler(
            run_all=AsyncMock(side_effect=SyncAlreadyRunningError("busy"))
        )
        scheduler = SyncScheduler(reconciler)

        assert await scheduler.run_scheduled() is None


class TestTriggerManual:
    @pytest.mark.asyncio
    async def test_passes_operator(self):
        reconciler = _make_reconciler()
        scheduler = SyncScheduler(reconciler)

        await scheduler.trigger_manual(triggered_by="op-1")

        reconciler.run_all.assert_awaited_once_with(SyncTrigger.MANUAL, triggered_by="op-1")

    @pytest.mark.asyncio
    async def test_overlap_raises(self):
        reconciler = _make_reconciler(
            run_all=AsyncMock(side_effect=SyncAlreadyRunningError("busy"))
        )
        scheduler = SyncScheduler(reconciler)

        with pytest.raises(SyncAlreadyRunningError):
            await scheduler.trigger_manual(triggered_by="op-1")


class TestStatus:
    def test_before_start(self):
        scheduler = SyncScheduler(_make_reconciler(), hour=3, minute=30)

        status = scheduler.status()

        assert status == {
            "running": False,
            "sync_in_progress": False,
            "schedule": "Daily 03:30 UTC",
            "next_run_at": None,
            "last_run": None,
        }

    @pytest.mark.asyncio
    async def test_last_run_summary(self, repo, partner, reconciler):
        await reconciler.run_all(SyncTrigger.MANUAL)
        scheduler = SyncScheduler(reconciler)

        last_run = scheduler.status()["last_run"]

        assert last_run["success"] is True
        assert last_run["trigger"] == "manual"
        assert last_run["total_partners"] == 1
        assert last_run["finished_at"] is not None
        assert last_run["summary"]["leads_created"] == 0

    @pytest.mark.asyncio
    async def test_start_registers_daily_job(self):
        scheduler = SyncScheduler(_make_reconciler(), hour=2, minute=0)

        assert scheduler.start() is True
        try:
            status = scheduler.status()
            assert status["running"] is True
            assert status["next_run_at"] is not None
            assert scheduler._scheduler.get_job(JOB_ID) is not None
            # Starting twice is a no-op.
            assert scheduler.start() is True
        finally:
            scheduler.shutdown()

        assert scheduler.status()["running"] is False
        assert scheduler.status()["next_run_at"] is None
