"""FastAPI dependency injection for operator authentication and engine services.

Operators authenticate with a bearer JWT issued by the portal auth service;
only ``role=admin`` may trigger syncs or read sync history. Zoho webhook calls
are authenticated with a shared token when ZOHO_WEBHOOK_TOKEN is configured.

Engine services are created in the app lifespan and read from app.state here,
with a 503 when they are not initialized.
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.partner_portal.config import get_settings
from src.partner_portal.core.security import verify_token


class Operator(BaseModel):
    """Authenticated portal user calling the operator API."""

    user_id: str
    role: str
    partner_id: str | None = None


async def get_current_operator(request: Request) -> Operator:
    """Extract and validate the operator from the Authorization header.

    Raises:
        HTTPException(401): If no valid bearer token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:], token_type="access")
    return Operator(
        user_id=payload["sub"],
        role=payload.get("role", "sub"),
        partner_id=payload.get("partner_id"),
    )


async def require_admin(operator: Operator = Depends(get_current_operator)) -> Operator:
    """Require the admin role.

    Raises:
        HTTPException(403): If the operator is not an admin.
    """
    if operator.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return operator


async def verify_webhook_token(request: Request) -> None:
    """Check the X-Webhook-Token header against ZOHO_WEBHOOK_TOKEN.

    No-op when no token is configured.

    Raises:
        HTTPException(401): If the token is missing or wrong.
    """
    expected = get_settings().ZOHO_WEBHOOK_TOKEN
    if not expected:
        return
    provided = request.headers.get("X-Webhook-Token", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )


# ── Service Accessors ────────────────────────────────────────────────────────


def _get_service(request: Request, service_name: str) -> Any:
    """Retrieve a reconciliation service from app.state, 503 if not available."""
    service = getattr(request.app.state, service_name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service '{service_name}' is not available",
        )
    return service


def get_webhook_ingestor(request: Request) -> Any:
    return _get_service(request, "webhook_ingestor")


def get_sync_scheduler(request: Request) -> Any:
    return _get_service(request, "sync_scheduler")


def get_portal_repository(request: Request) -> Any:
    return _get_service(request, "portal_repository")


def get_lead_publisher(request: Request) -> Any:
    return _get_service(request, "lead_publisher")
