"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and integration service initialization, the
push channel renewal scheduler, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm_connect.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm_connect.api.v1.router import router as v1_router
from src.crm_connect.config import get_settings
from src.crm_connect.core.database import close_db, get_session, init_db
from src.crm_connect.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm_connect.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and integrations; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Credentials & OAuth ───────────────────────────────────────────────
    # Each block is failure-tolerant: a missing TOKEN_ENCRYPTION_KEY leaves
    # the services unset and the integration routes answer 503.

    try:
        from src.crm_connect.integrations.credentials import CredentialRepository, TokenCipher
        from src.crm_connect.integrations.oauth import (
            CredentialTokenManager,
            OAuthExchangeClient,
            OAuthStateSigner,
            RedisCodeLedger,
        )

        redis_client = get_redis_pool()
        credential_repository = CredentialRepository(
            session_factory=get_session,
            cipher=TokenCipher(settings.TOKEN_ENCRYPTION_KEY),
        )
        oauth_client = OAuthExchangeClient(code_ledger=RedisCodeLedger(redis_client))

        app.state.credential_repository = credential_repository
        app.state.oauth_client = oauth_client
        app.state.oauth_state_signer = OAuthStateSigner(
            settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
        )
        app.state.token_manager = CredentialTokenManager(
            credential_repository, oauth_client, settings
        )
        log.info("integrations.credentials_initialized")
    except Exception:
        log.warning("integrations.credentials_init_failed", exc_info=True)
        app.state.credential_repository = None
        app.state.oauth_client = None
        app.state.oauth_state_signer = None
        app.state.token_manager = None

    # ── Google Calendar ───────────────────────────────────────────────────

    app.state.webhook_manager = None
    app.state.sync_orchestrator = None
    app.state.webhook_renewal_scheduler = None

    if app.state.token_manager is not None:
        try:
            from src.crm_connect.core.locks import RedisLockProvider
            from src.crm_connect.integrations.google_calendar import (
                CalendarEventRepository,
                CalendarSyncOrchestrator,
                GoogleCalendarChannelClient,
                WebhookRenewalScheduler,
                WebhookSubscriptionManager,
            )

            webhook_manager = WebhookSubscriptionManager(
                repository=app.state.credential_repository,
                channel_client=GoogleCalendarChannelClient(),
                token_manager=app.state.token_manager,
                lock_provider=RedisLockProvider(get_redis_pool()),
                settings=settings,
            )
            app.state.webhook_manager = webhook_manager
            app.state.sync_orchestrator = CalendarSyncOrchestrator(
                repository=app.state.credential_repository,
                event_repository=CalendarEventRepository(session_factory=get_session),
                token_manager=app.state.token_manager,
            )

            scheduler = WebhookRenewalScheduler(
                webhook_manager,
                interval_minutes=settings.WEBHOOK_RENEWAL_INTERVAL_MINUTES,
            )
            if scheduler.start():
                app.state.webhook_renewal_scheduler = scheduler
            log.info("integrations.google_calendar_initialized")
        except Exception:
            log.warning("integrations.google_calendar_init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "webhook_renewal_scheduler", None)
    if scheduler is not None:
        scheduler.stop()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Connect API",
        version="0.1.0",
        description="OAuth connections, Google Calendar push channels and sync for the CRM",
        lifespan=lifespan,
    )

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

    # Include v1 API router (health, auth, integrations)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
