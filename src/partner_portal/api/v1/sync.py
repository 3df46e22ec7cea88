"""Operator endpoints for CRM sync.

Manual full sync, scheduler status, sync run history and the outbound
publish of a single lead. Everything except status requires the admin role.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.partner_portal.api.deps import (
    Operator,
    get_current_operator,
    get_lead_publisher,
    get_portal_repository,
    get_sync_scheduler,
    require_admin,
)
from src.partner_portal.reconciliation.schemas import (
    ActivityAction,
    ActivityRead,
    LeadRead,
    SyncRunResult,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class SyncStatusResponse(BaseModel):
    running: bool
    sync_in_progress: bool
    schedule: str
    next_run_at: str | None = None
    last_run: dict[str, Any] | None = None


class SyncHistoryResponse(BaseModel):
    """One page of past sync runs, newest first."""

    entries: list[ActivityRead] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
    has_more: bool = False


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/manual", response_model=SyncRunResult)
async def trigger_manual_sync(
    operator: Operator = Depends(require_admin),
    scheduler: Any = Depends(get_sync_scheduler),
) -> SyncRunResult:
    """Run a full CRM sync now.

    Returns the full aggregate even on partial failure. 409 while another
    run is in flight.
    """
    logger.info("sync_api.manual_requested", user_id=operator.user_id)
    return await scheduler.trigger_manual(triggered_by=operator.user_id)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    operator: Operator = Depends(get_current_operator),
    scheduler: Any = Depends(get_sync_scheduler),
) -> SyncStatusResponse:
    """Scheduler state, next scheduled run and last run summary."""
    return SyncStatusResponse(**scheduler.status())


@router.get("/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    operator: Operator = Depends(require_admin),
    repository: Any = Depends(get_portal_repository),
) -> SyncHistoryResponse:
    """Past full sync runs from the activity log."""
    entries, total = await repository.list_activities(
        ActivityAction.SYNC_COMPLETED.value, limit=limit, offset=offset
    )
    return SyncHistoryResponse(
        entries=entries,
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(entries) < total,
    )


@router.post("/leads/{lead_id}/publish", response_model=LeadRead)
async def publish_lead(
    lead_id: str,
    operator: Operator = Depends(require_admin),
    publisher: Any = Depends(get_lead_publisher),
) -> LeadRead:
    """Create or update the Zoho copy of a portal lead."""
    logger.info("sync_api.publish_requested", lead_id=lead_id, user_id=operator.user_id)
    return await publisher.publish(lead_id)
