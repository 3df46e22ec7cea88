"""API tests for the operator sync endpoints and health checks."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.partner_portal.api.deps import Operator, get_current_operator
from src.partner_portal.core.security import create_access_token
from src.partner_portal.reconciliation.errors import ReconciliationError, SyncAlreadyRunningError
from src.partner_portal.reconciliation.publisher import LeadPublisher
from src.partner_portal.reconciliation.scheduler import SyncScheduler


def _make_mock_app():
    """Create a minimal FastAPI app with the sync and health routers."""
    from fastapi import FastAPI
    from fastapi.exceptions import RequestValidationError

    from src.partner_portal.api.v1.health import router as health_router
    from src.partner_portal.api.v1.sync import router
    from src.partner_portal.main import (
        reconciliation_error_handler,
        webhook_validation_error_handler,
    )

    app = FastAPI()
    app.include_router(router)
    app.include_router(health_router)
    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(RequestValidationError, webhook_validation_error_handler)
    return app


def _operator(role: str = "admin"):
    def _override() -> Operator:
        return Operator(user_id="op-1", role=role)

    return _override


@pytest_asyncio.fixture
async def client(repo, crm, reconciler):
    app = _make_mock_app()
    app.dependency_overrides[get_current_operator] = _operator("admin")
    app.state.sync_scheduler = SyncScheduler(reconciler)
    app.state.portal_repository = repo
    app.state.lead_publisher = LeadPublisher(repo, crm)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac, app


# ── Manual Sync ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_sync_returns_aggregate(client, repo, crm, partner):
    ac, _ = client
    crm.leads["V1"] = [
        {"id": "zl-1", "First_Name": "Ada", "Last_Name": "Lovelace", "Email": "ada@example.com"}
    ]

    response = await ac.post("/api/v1/sync/manual")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["trigger"] == "manual"
    assert body["summary"]["leads_created"] == 1
    activity = repo.activities_for("daily_sync_completed")[0]
    assert activity.metadata["triggered_by"] == "op-1"


@pytest.mark.asyncio
async def test_manual_sync_while_running_is_409(client):
    ac, app = client
    scheduler = MagicMock()
    scheduler.trigger_manual = AsyncMock(
        side_effect=SyncAlreadyRunningError("A CRM sync run is already in progress")
    )
    app.state.sync_scheduler = scheduler

    response = await ac.post("/api/v1/sync/manual")

    assert response.status_code == 409
    assert response.json()["error"] == "sync_in_progress"


@pytest.mark.asyncio
async def test_manual_sync_requires_admin(client):
    ac, app = client
    app.dependency_overrides[get_current_operator] = _operator("sub")

    response = await ac.post("/api/v1/sync/manual")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_missing_bearer_token_is_401(client):
    ac, app = client
    app.dependency_overrides.clear()

    response = await ac.get("/api/v1/sync/status")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_real_bearer_token_accepted(client):
    ac, app = client
    app.dependency_overrides.clear()
    token = create_access_token({"sub": "op-2", "role": "sub"})

    response = await ac.get(
        "/api/v1/sync/status", headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_scheduler_not_initialized_is_503(client):
    ac, app = client
    app.state.sync_scheduler = None

    response = await ac.post("/api/v1/sync/manual")

    assert response.status_code == 503


# ── Status & History ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_reports_last_run(client, partner):
    ac, _ = client
    await ac.post("/api/v1/sync/manual")

    response = await ac.get("/api/v1/sync/status")

    assert response.status_code == 200
    body = response.json()
    assert body["schedule"] == "Daily 02:00 UTC"
    assert body["running"] is False
    assert body["sync_in_progress"] is False
    assert body["last_run"]["total_partners"] == 1


@pytest.mark.asyncio
async def test_history_paginates_newest_first(client, partner):
    ac, _ = client
    await ac.post("/api/v1/sync/manual")
    await ac.post("/api/v1/sync/manual")

    response = await ac.get("/api/v1/sync/history", params={"limit": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert len(body["entries"]) == 1
    assert body["has_more"] is True
    assert body["entries"][0]["action"] == "daily_sync_completed"

    last_page = await ac.get("/api/v1/sync/history", params={"limit": 1, "offset": 1})
    assert last_page.json()["has_more"] is False
    assert last_page.json()["entries"][0]["id"] != body["entries"][0]["id"]


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
async def test_history_rejects_bad_paging(client, params):
    ac, _ = client

    response = await ac.get("/api/v1/sync/history", params=params)

    assert response.status_code == 422


# ── Publish ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_publish_lead(client, repo, crm, partner):
    ac, _ = client
    lead = repo.add_lead(partner.id)

    response = await ac.post(f"/api/v1/sync/leads/{lead.id}/publish")

    assert response.status_code == 200
    assert response.json()["external_id"] == "zl-1"
    assert response.json()["sync_state"] == "synced"
    assert len(crm.created) == 1


@pytest.mark.asyncio
async def test_publish_unknown_lead_is_404(client):
    ac, _ = client

    response = await ac.post("/api/v1/sync/leads/missing/publish")

    assert response.status_code == 404


# ── Health ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client):
    ac, _ = client

    response = await ac.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_fails_without_database(client, monkeypatch):
    ac, _ = client

    def broken_engine():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("src.partner_portal.api.v1.health.get_engine", broken_engine)

    response = await ac.get("/health/ready")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "not_ready"
    assert body["checks"]["database"] == "error"
    assert body["checks"]["scheduler"] == "stopped"
