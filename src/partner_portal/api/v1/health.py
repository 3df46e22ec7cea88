"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies database connectivity; the Zoho client is not called since a Zoho
outage only delays sync and webhooks are retried by Zoho.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.partner_portal.config import get_settings
from src.partner_portal.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and scheduler state. Returns check results dict."""
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None:
        checks["scheduler"] = "not_initialized"
    else:
        checks["scheduler"] = "running" if scheduler.status()["running"] else "stopped"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the database answers, 503 otherwise."""
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "not_ready",
            "checks": checks,
        },
    )
