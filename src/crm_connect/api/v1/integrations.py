"""Integration connect / disconnect / status / sync endpoints and Google webhooks.

Browser-facing endpoints (the OAuth callback) never fail with an error page:
every outcome is a redirect to the settings page with a query flag such as
``google_connected=true`` or ``gmail_error=invalid_state``.

API endpoints raise HTTPException with a structured ``{"error", "message"}``
detail. The Google push endpoint always answers 200 so that Google never
retries or disables the channel because of our processing errors.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    status,
)
from fastapi.responses import RedirectResponse

from src.crm_connect.api.deps import get_current_user
from src.crm_connect.config import Settings, get_settings
from src.crm_connect.core.locks import LockAcquireError
from src.crm_connect.core.security import secrets_match
from src.crm_connect.integrations.credentials.schemas import CredentialStatus, ServiceId
from src.crm_connect.integrations.errors import (
    AttributionError,
    ConfigurationError,
    IntegrationError,
    NotConnectedError,
    RefreshError,
    TokenExchangeError,
    TransientNetworkError,
)
from src.crm_connect.integrations.google_calendar.sync import (
    NotificationOutcome,
    parse_notification,
)
from src.crm_connect.integrations.google_calendar.webhooks import RenewalOutcome
from src.crm_connect.integrations.oauth.providers import (
    REDIRECT_FLAG_PREFIX,
    get_provider_config,
)
from src.crm_connect.models.user import User
from src.crm_connect.schemas.integrations import (
    AuthorizationUrlResponse,
    DisconnectResponse,
    RenewAllResponse,
    RenewWebhookRequest,
    RenewWebhookResponse,
    SyncResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def _get_credential_repository(request: Request) -> Any:
    """Retrieve CredentialRepository from app.state, 503 if not available."""
    return _from_state(request, "credential_repository", "Credential repository")


def _get_oauth_client(request: Request) -> Any:
    """Retrieve OAuthExchangeClient from app.state, 503 if not available."""
    return _from_state(request, "oauth_client", "OAuth client")


def _get_state_signer(request: Request) -> Any:
    """Retrieve OAuthStateSigner from app.state, 503 if not available."""
    return _from_state(request, "oauth_state_signer", "OAuth state signer")


def _get_webhook_manager(request: Request) -> Any:
    """Retrieve WebhookSubscriptionManager from app.state, 503 if not available."""
    return _from_state(request, "webhook_manager", "Webhook manager")


def _get_sync_orchestrator(request: Request) -> Any:
    """Retrieve CalendarSyncOrchestrator from app.state, 503 if not available."""
    return _from_state(request, "sync_orchestrator", "Calendar sync")


def _settings_redirect(settings: Settings, **flags: str) -> RedirectResponse:
    url = f"{settings.APP_URL.rstrip('/')}/settings?{urlencode(flags)}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


# ── OAuth connect flow ───────────────────────────────────────────────────────


@router.get("/{service}/auth", response_model=None)
async def start_authorization(
    service: ServiceId,
    request: Request,
    response_format: str | None = Query(default=None, alias="format"),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse | AuthorizationUrlResponse:
    """Send the user to Google's consent screen.

    Returns a 307 redirect, or ``{"url": ...}`` with ``?format=json``.
    """
    client = _get_oauth_client(request)
    signer = _get_state_signer(request)

    try:
        config = get_provider_config(settings, service)
    except ConfigurationError as exc:
        logger.error("integrations.oauth_not_configured", service=service.value, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.to_detail(),
        )

    user_id = str(current_user.id)
    state = signer.issue(user_id, service)
    url = client.build_authorization_url(
        config.client_id, config.redirect_uri, config.scopes, state
    )
    logger.info("integrations.authorization_started", service=service.value, user_id=user_id)

    if response_format == "json":
        return AuthorizationUrlResponse(url=url)
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/{service}/callback")
async def oauth_callback(
    service: ServiceId,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """OAuth redirect target. Always answers with a redirect to settings."""
    prefix = REDIRECT_FLAG_PREFIX[service]
    error_flag = f"{prefix}_error"

    if error:
        logger.info("integrations.consent_denied", service=service.value, provider_error=error)
        return _settings_redirect(settings, **{error_flag: error})

    if not code or not state:
        return _settings_redirect(settings, **{error_flag: "invalid_params"})

    signer = _get_state_signer(request)
    client = _get_oauth_client(request)
    repository = _get_credential_repository(request)

    try:
        user_id = signer.verify(state, service)
    except AttributionError:
        return _settings_redirect(settings, **{error_flag: "invalid_state"})

    try:
        config = get_provider_config(settings, service)
    except ConfigurationError as exc:
        logger.error("integrations.oauth_not_configured", service=service.value, error=str(exc))
        return _settings_redirect(settings, **{error_flag: exc.code})

    try:
        tokens = await client.exchange_code_for_tokens(
            code,
            config.client_id,
            config.client_secret,
            config.redirect_uri,
            service=service,
        )
    except (TokenExchangeError, TransientNetworkError) as exc:
        logger.warning(
            "integrations.token_exchange_failed",
            service=service.value,
            user_id=user_id,
            error=str(exc),
        )
        return _settings_redirect(settings, **{error_flag: TokenExchangeError.code})

    try:
        await repository.upsert_tokens(
            user_id,
            service,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at(),
            tokens.scope,
        )
    except Exception:
        logger.error(
            "integrations.credential_store_failed",
            service=service.value,
            user_id=user_id,
            exc_info=True,
        )
        return _settings_redirect(settings, **{error_flag: "storage_failed"})

    if service == ServiceId.GOOGLE_CALENDAR:
        manager = getattr(request.app.state, "webhook_manager", None)
        if manager is not None:
            try:
                await manager.check_and_renew(user_id)
            except (IntegrationError, LockAcquireError) as exc:
                # Connection still succeeds; the renewal pass retries later
                logger.warning(
                    "integrations.webhook_setup_failed",
                    user_id=user_id,
                    error=str(exc),
                )

    logger.info("integrations.connected", service=service.value, user_id=user_id)
    return _settings_redirect(settings, **{f"{prefix}_connected": "true"})


@router.post("/{service}/disconnect", response_model=DisconnectResponse)
async def disconnect(
    service: ServiceId,
    request: Request,
    current_user: User = Depends(get_current_user),
) -> DisconnectResponse:
    """Disconnect a service. Succeeds whether or not it was connected."""
    user_id = str(current_user.id)

    if service == ServiceId.GOOGLE_CALENDAR:
        manager = _get_webhook_manager(request)
        try:
            await manager.disconnect(user_id)
        except LockAcquireError:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": "busy", "message": "Another operation is in progress"},
            )
    else:
        repository = _get_credential_repository(request)
        await repository.deactivate(user_id, service)

    logger.info("integrations.disconnected", service=service.value, user_id=user_id)
    return DisconnectResponse(success=True)


@router.get("/{service}/status")
async def connection_status(
    service: ServiceId,
    request: Request,
    current_user: User = Depends(get_current_user),
) -> dict:
    """Connection status: ``{"isConnected", "tokenExpiry", "webhookExpiry"}``."""
    repository = _get_credential_repository(request)
    record = await repository.get(str(current_user.id), service)

    if record is None or not record.is_active:
        result = CredentialStatus(is_connected=False)
    else:
        result = CredentialStatus(
            is_connected=True,
            token_expiry=record.expires_at,
            webhook_expiry=record.webhook_expires_at,
        )
    return result.model_dump(mode="json", by_alias=True)


@router.post("/{service}/sync", response_model=SyncResponse)
async def sync_now(
    service: ServiceId,
    request: Request,
    current_user: User = Depends(get_current_user),
) -> SyncResponse:
    """Two-way sync: push upcoming CRM events to Google, then import.

    Called by the front end right after a successful connect.
    """
    if service != ServiceId.GOOGLE_CALENDAR:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "unsupported_service",
                "message": f"{service.value} does not support calendar sync",
            },
        )

    orchestrator = _get_sync_orchestrator(request)
    user_id = str(current_user.id)

    try:
        result = await orchestrator.sync(user_id)
    except NotConnectedError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_detail())
    except RefreshError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_detail()
        )
    except IntegrationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_detail())

    return SyncResponse(
        success=result.error is None,
        created=result.created,
        updated=result.updated,
        imported=result.imported,
        failed=result.failed,
    )


# ── Google Calendar push notifications ───────────────────────────────────────


@router.post("/google_calendar/webhook")
async def google_calendar_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    """Google Calendar push notification receiver.

    Returns 200 OK always. Reconciliation runs as a background task after
    the response is sent.
    """
    notification = parse_notification(request.headers)
    if notification is None:
        logger.warning("webhook.missing_headers")
        return {"status": "ok"}

    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        logger.warning("webhook.orchestrator_unavailable", channel_id=notification.channel_id)
        return {"status": "ok"}

    try:
        result = await orchestrator.handle_notification(notification)
    except Exception:
        logger.warning(
            "webhook.handler_error",
            channel_id=notification.channel_id,
            resource_state=notification.resource_state,
            exc_info=True,
        )
        return {"status": "ok"}

    if result.outcome == NotificationOutcome.RECONCILE_SCHEDULED and result.user_id:
        background_tasks.add_task(orchestrator.reconcile, result.user_id)

    return {"status": "ok"}


@router.post("/google_calendar/renew-webhook", response_model=None)
async def renew_webhooks(
    request: Request,
    body: RenewWebhookRequest | None = None,
    x_cron_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> RenewWebhookResponse | RenewAllResponse:
    """Renew one user's channel, or every channel when no user is given.

    Protected by the ``X-Cron-Secret`` header when CRON_SECRET is set.
    """
    if settings.CRON_SECRET and not secrets_match(x_cron_secret, settings.CRON_SECRET):
        logger.warning("webhook.renew_unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": "Invalid cron secret"},
        )

    manager = _get_webhook_manager(request)

    if body is not None and body.user_id:
        try:
            outcome = await manager.check_and_renew(body.user_id)
        except RefreshError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail())
        except IntegrationError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_detail())
        except LockAcquireError:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": "busy", "message": "Another operation is in progress"},
            )

        if outcome == RenewalOutcome.NOT_CONNECTED:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "error": "not_connected",
                    "message": "Google Calendar is not connected for this user",
                },
            )

        renewed = outcome in (RenewalOutcome.RENEWED, RenewalOutcome.REGISTERED)
        return RenewWebhookResponse(
            success=True,
            renewed=renewed,
            outcome=outcome.value,
            message="Webhook renewed" if renewed else "Webhook still valid",
        )

    reports = await manager.renew_all()
    return RenewAllResponse(
        success=True,
        total=len(reports),
        successful=sum(1 for r in reports if r.success),
        renewed=sum(
            1
            for r in reports
            if r.outcome in (RenewalOutcome.RENEWED, RenewalOutcome.REGISTERED)
        ),
        results=reports,
    )
