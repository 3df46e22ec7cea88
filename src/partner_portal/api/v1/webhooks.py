"""Zoho webhook endpoints.

Zoho workflow rules call these on vendor approval, contact creation, lead
status change and deal create/update. Each handler runs under
WEBHOOK_TIMEOUT_SECONDS; failures are raised as ReconciliationError and
rendered by the app's exception handler, so Zoho always gets a JSON body.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable

import structlog
from fastapi import APIRouter, Depends, Response, status

from src.partner_portal.api.deps import get_webhook_ingestor, verify_webhook_token
from src.partner_portal.config import get_settings
from src.partner_portal.core.monitoring import crm_webhook_events_total
from src.partner_portal.reconciliation.errors import (
    HandlerTimeoutError,
    ReconciliationError,
    WebhookProcessingError,
)
from src.partner_portal.reconciliation.schemas import (
    ContactWebhookPayload,
    DealWebhookPayload,
    LeadStatusWebhookPayload,
    PartnerWebhookPayload,
    WebhookResult,
)
from src.partner_portal.reconciliation.webhooks import WebhookIngestor

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/webhooks/zoho",
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_token)],
)


async def _dispatch(event: str, handler: Awaitable[WebhookResult]) -> WebhookResult:
    """Await a handler under the webhook timeout and count the outcome.

    Raises:
        HandlerTimeoutError: the handler did not finish in time.
        WebhookProcessingError: the handler failed outside the error taxonomy.
    """
    timeout = get_settings().WEBHOOK_TIMEOUT_SECONDS
    try:
        result = await asyncio.wait_for(handler, timeout=timeout)
    except asyncio.TimeoutError:
        crm_webhook_events_total.labels(event=event, outcome="timeout").inc()
        logger.error("webhook.timeout", event_kind=event, timeout_seconds=timeout)
        raise HandlerTimeoutError(
            f"Webhook handler exceeded {timeout:g}s", event=event
        ) from None
    except ReconciliationError as exc:
        crm_webhook_events_total.labels(event=event, outcome=exc.code).inc()
        raise
    except Exception as exc:
        crm_webhook_events_total.labels(
            event=event, outcome=WebhookProcessingError.code
        ).inc()
        logger.exception("webhook.processing_failed", event_kind=event, error=str(exc))
        raise WebhookProcessingError(str(exc) or type(exc).__name__, event=event) from exc
    crm_webhook_events_total.labels(event=event, outcome=result.action).inc()
    return result


def _creation_status(response: Response, result: WebhookResult) -> WebhookResult:
    if result.created:
        response.status_code = status.HTTP_201_CREATED
    return result


@router.post("/partner", response_model=WebhookResult)
async def partner_webhook(
    payload: PartnerWebhookPayload,
    response: Response,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookResult:
    """Zoho Vendor approved: provision the partner and its admin user.

    Answers 201 when the partner is created, 200 when it already exists.
    """
    logger.info("webhook.received", event_kind="partner", external_id=payload.id)
    result = await _dispatch("partner", ingestor.handle_partner_event(payload))
    return _creation_status(response, result)


@router.post("/contact", response_model=WebhookResult)
async def contact_webhook(
    payload: ContactWebhookPayload,
    response: Response,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookResult:
    """Zoho contact created under a Vendor: provision a sub user."""
    logger.info(
        "webhook.received",
        event_kind="contact",
        contact_id=payload.contact_id,
        partner_external_id=payload.partner_id,
    )
    result = await _dispatch("contact", ingestor.handle_contact_event(payload))
    return _creation_status(response, result)


@router.post("/lead-status", response_model=WebhookResult)
async def lead_status_webhook(
    payload: LeadStatusWebhookPayload,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookResult:
    """Zoho Lead_Status changed."""
    logger.info(
        "webhook.received",
        event_kind="lead_status",
        external_id=payload.id,
        lead_status=payload.lead_status,
    )
    return await _dispatch("lead_status", ingestor.handle_lead_status_event(payload))


@router.post("/deal", response_model=WebhookResult)
async def deal_webhook(
    payload: DealWebhookPayload,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> WebhookResult:
    """Zoho deal created or updated."""
    logger.info(
        "webhook.received",
        event_kind="deal",
        external_id=payload.zoho_deal_id,
        stage=payload.stage,
    )
    return await _dispatch("deal", ingestor.handle_deal_event(payload))
