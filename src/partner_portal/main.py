"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events wiring the reconciliation engine onto app.state, the
ReconciliationError handler, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.partner_portal.config import get_settings
from src.partner_portal.core.database import close_db, get_session, init_db
from src.partner_portal.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.partner_portal.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.partner_portal.api.v1.router import router as v1_router
from src.partner_portal.reconciliation.crm.zoho import TokenCache, ZohoClient
from src.partner_portal.reconciliation.errors import ReconciliationError
from src.partner_portal.reconciliation.matching import ConversionMatcher
from src.partner_portal.reconciliation.notifications import RepositoryNotificationSink
from src.partner_portal.reconciliation.publisher import LeadPublisher
from src.partner_portal.reconciliation.repository import PortalRepository
from src.partner_portal.reconciliation.scheduler import SyncScheduler
from src.partner_portal.reconciliation.sync import SyncReconciler
from src.partner_portal.reconciliation.webhooks import WebhookIngestor
from src.partner_portal.services.account_provisioning import AccountProvisioner

WEBHOOK_PATH_PREFIX = "/api/v1/webhooks/"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the engine on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Webhook Path ──────────────────────────────────────────────────────
    repository = PortalRepository(session_factory=get_session)
    app.state.portal_repository = repository
    app.state.webhook_ingestor = WebhookIngestor(
        repository=repository,
        matcher=ConversionMatcher(repository),
        provisioner=AccountProvisioner(session_factory=get_session),
        notifier=RepositoryNotificationSink(repository),
    )
    log.info("reconciliation.webhook_ingestor_initialized")

    # ── Sync Path ─────────────────────────────────────────────────────────
    # Needs Zoho credentials; without them the sync endpoints answer 503.
    app.state.crm_client = None
    app.state.sync_reconciler = None
    app.state.sync_scheduler = None
    app.state.lead_publisher = None
    if settings.zoho_configured():
        crm_client = ZohoClient.from_settings(settings, token_cache=TokenCache())
        reconciler = SyncReconciler(
            repository=repository,
            crm_client=crm_client,
            partner_delay_seconds=settings.SYNC_PARTNER_DELAY_SECONDS,
            partner_timeout_seconds=settings.SYNC_PARTNER_TIMEOUT_SECONDS,
        )
        scheduler = SyncScheduler(
            reconciler,
            hour=settings.SYNC_HOUR_UTC,
            minute=settings.SYNC_MINUTE_UTC,
        )
        app.state.crm_client = crm_client
        app.state.sync_reconciler = reconciler
        app.state.sync_scheduler = scheduler
        app.state.lead_publisher = LeadPublisher(repository, crm_client)

        if settings.SYNC_ENABLED:
            if not scheduler.start():
                log.warning("reconciliation.scheduler_not_started")
        else:
            log.info("reconciliation.scheduler_disabled")
    else:
        log.warning(
            "reconciliation.zoho_not_configured",
            hint="Set ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET and ZOHO_REFRESH_TOKEN",
        )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        scheduler.shutdown()

    crm_client = getattr(app.state, "crm_client", None)
    if crm_client is not None:
        await crm_client.close()

    await close_db()


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Render engine errors as ``{"error": code, "message": ...}``."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def webhook_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> Response:
    """Render webhook payload type errors in the engine's ``invalid_input`` shape.

    Other routes keep FastAPI's default 422 response.
    """
    if not request.url.path.startswith(WEBHOOK_PATH_PREFIX):
        return await request_validation_exception_handler(request, exc)
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={
            "error": "invalid_input",
            "message": f"Invalid webhook payload: {problems}",
            "received": exc.body if isinstance(exc.body, dict) else None,
        },
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Partner Portal CRM Reconciliation API",
        version="0.1.0",
        description="Zoho CRM webhooks, daily reconciliation and lead conversion tracking",
        lifespan=lifespan,
    )

    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.add_exception_handler(RequestValidationError, webhook_validation_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, webhooks, sync)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
