"""Push channel lifecycle for Google Calendar credentials.

Per credential the channel moves between three states:

    Unregistered --register--> Active --check_and_renew (<24h)--> Active (new id)
    Active --disconnect--> Unregistered (credential inactive)

A record whose webhook triple is only partly set is treated as
Unregistered and re-registered on the next renewal check.

Every mutation for a user runs under the lock ``webhook:{service}:{user_id}``
and re-reads the record inside it, so the renewal scheduler and API requests
cannot interleave their read-modify-write of the same channel fields.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import structlog
from pydantic import BaseModel

from src.crm_connect.config import Settings
from src.crm_connect.core.locks import LockAcquireError
from src.crm_connect.core.monitoring import webhook_channel_operations_total
from src.crm_connect.integrations.credentials.schemas import ServiceId, WebhookChannel
from src.crm_connect.integrations.errors import (
    IntegrationError,
    NotConnectedError,
    WebhookRegistrationError,
)
from src.crm_connect.integrations.google_calendar.channels import GoogleCalendarChannelClient
from src.crm_connect.integrations.oauth.tokens import CredentialTokenManager

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from src.crm_connect.integrations.credentials.repository import CredentialRepository

logger = structlog.get_logger(__name__)

WEBHOOK_PATH = "/api/v1/integrations/google_calendar/webhook"
CHANNEL_ID_PREFIX = "crm-"


class LockProvider(Protocol):
    def lock(self, key: str) -> AbstractAsyncContextManager[None]: ...


class RenewalOutcome(str, Enum):
    STILL_VALID = "still_valid"
    RENEWED = "renewed"
    REGISTERED = "registered"
    NOT_CONNECTED = "not_connected"


class RenewalReport(BaseModel):
    """Result of one user's renewal inside a renew-all pass."""

    user_id: str
    outcome: RenewalOutcome | None = None
    success: bool
    error: str | None = None


class WebhookSubscriptionManager:
    """Register, renew, and stop Google Calendar push channels.

    Args:
        repository: Credential persistence.
        channel_client: events.watch / channels.stop client.
        token_manager: Supplies valid (refreshed if needed) access tokens.
        lock_provider: Keyed lock (Redis in production).
        settings: Webhook base URL, renewal threshold, max TTL.
    """

    service = ServiceId.GOOGLE_CALENDAR

    def __init__(
        self,
        repository: CredentialRepository,
        channel_client: GoogleCalendarChannelClient,
        token_manager: CredentialTokenManager,
        lock_provider: LockProvider,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._channels = channel_client
        self._tokens = token_manager
        self._locks = lock_provider
        self._threshold_hours = settings.WEBHOOK_RENEWAL_THRESHOLD_HOURS
        self._max_ttl = timedelta(days=settings.WEBHOOK_MAX_TTL_DAYS)
        self._address = f"{settings.get_webhook_base_url()}{WEBHOOK_PATH}"

    def _lock_key(self, user_id: str) -> str:
        return f"webhook:{self.service.value}:{user_id}"

    # ── Public operations ────────────────────────────────────────────────

    async def register(self, access_token: str, user_id: str) -> WebhookChannel:
        """Open a new channel for the user and persist it.

        Raises:
            NotConnectedError: No active credential for the user.
            WebhookRegistrationError: Google refused or could not be reached.
        """
        async with self._locks.lock(self._lock_key(user_id)):
            record = await self._repository.get(user_id, self.service)
            if record is None or not record.is_active:
                raise NotConnectedError("Google Calendar is not connected for this user")
            return await self._register_locked(access_token, user_id)

    async def check_and_renew(self, user_id: str) -> RenewalOutcome:
        """Renew the user's channel when it expires within the threshold.

        Raises:
            WebhookRegistrationError: Re-registration failed; the old channel
                fields are left in place for the next pass.
            RefreshError: The stored refresh token is no longer usable.
        """
        async with self._locks.lock(self._lock_key(user_id)):
            record = await self._repository.get(user_id, self.service)
            if record is None or not record.is_active:
                return RenewalOutcome.NOT_CONNECTED

            channel = record.webhook
            if channel is None:
                if record.has_partial_webhook:
                    logger.warning("webhook.inconsistent_state", user_id=user_id)
                access_token = await self._tokens.get_valid_access_token(user_id, self.service)
                await self._register_locked(access_token, user_id)
                return RenewalOutcome.REGISTERED

            hours_left = channel.hours_until_expiry()
            if hours_left >= self._threshold_hours:
                logger.debug(
                    "webhook.still_valid",
                    user_id=user_id,
                    hours_left=round(hours_left, 1),
                )
                return RenewalOutcome.STILL_VALID

            access_token = await self._tokens.get_valid_access_token(user_id, self.service)
            await self._stop_quietly(access_token, channel, user_id)
            await self._register_locked(access_token, user_id, operation="renew")
            logger.info(
                "webhook.renewed",
                user_id=user_id,
                previous_channel_id=channel.channel_id,
                hours_left=round(hours_left, 1),
            )
            return RenewalOutcome.RENEWED

    async def disconnect(self, user_id: str) -> bool:
        """Stop the channel, clear it, and deactivate the credential.

        Idempotent. Returns False when the user never connected.
        """
        async with self._locks.lock(self._lock_key(user_id)):
            record = await self._repository.get(user_id, self.service)
            if record is None:
                return False

            if record.is_active and record.webhook_channel_id and record.webhook_resource_id:
                try:
                    access_token = await self._tokens.get_valid_access_token(
                        user_id, self.service
                    )
                except IntegrationError as exc:
                    # Channel expires on its own within the max TTL
                    logger.warning(
                        "webhook.stop_skipped",
                        user_id=user_id,
                        reason=exc.code,
                    )
                else:
                    await self._stop_quietly(
                        access_token,
                        WebhookChannel(
                            channel_id=record.webhook_channel_id,
                            resource_id=record.webhook_resource_id,
                            expires_at=record.webhook_expires_at or datetime.now(timezone.utc),
                        ),
                        user_id,
                    )

            await self._repository.clear_webhook(user_id, self.service)
            await self._repository.deactivate(user_id, self.service)
            logger.info("webhook.disconnected", user_id=user_id, was_active=record.is_active)
            return True

    async def renew_all(self) -> list[RenewalReport]:
        """Check-and-renew every active Google Calendar credential.

        One user's failure never stops the pass.
        """
        records = await self._repository.list_active(self.service)
        reports: list[RenewalReport] = []

        for record in records:
            user_id = record.user_id
            try:
                outcome = await self.check_and_renew(user_id)
                reports.append(RenewalReport(user_id=user_id, outcome=outcome, success=True))
            except IntegrationError as exc:
                logger.warning("webhook.renewal_failed", user_id=user_id, error=exc.code)
                reports.append(RenewalReport(user_id=user_id, success=False, error=exc.code))
            except LockAcquireError:
                logger.warning("webhook.renewal_lock_busy", user_id=user_id)
                reports.append(RenewalReport(user_id=user_id, success=False, error="lock_timeout"))
            except Exception as exc:
                logger.error(
                    "webhook.renewal_error",
                    user_id=user_id,
                    error=str(exc),
                    exc_info=True,
                )
                reports.append(RenewalReport(user_id=user_id, success=False, error="internal_error"))

        logger.info(
            "webhook.renew_all_completed",
            total=len(reports),
            successful=sum(1 for r in reports if r.success),
            renewed=sum(
                1
                for r in reports
                if r.outcome in (RenewalOutcome.RENEWED, RenewalOutcome.REGISTERED)
            ),
        )
        return reports

    # ── Internals (caller holds the user's lock) ─────────────────────────

    async def _register_locked(
        self, access_token: str, user_id: str, operation: str = "register"
    ) -> WebhookChannel:
        now = datetime.now(timezone.utc)
        ceiling = now + self._max_ttl
        channel_id = f"{CHANNEL_ID_PREFIX}{uuid.uuid4().hex}"

        try:
            granted = await self._channels.watch(
                access_token,
                channel_id=channel_id,
                address=self._address,
                token=user_id,
                expiration=ceiling,
            )
        except WebhookRegistrationError:
            webhook_channel_operations_total.labels(operation=operation, status="failure").inc()
            logger.warning("webhook.registration_failed", user_id=user_id, channel_id=channel_id)
            raise

        channel = WebhookChannel(
            channel_id=granted.channel_id,
            resource_id=granted.resource_id,
            expires_at=min(granted.expires_at, ceiling),
        )
        await self._repository.set_webhook(user_id, self.service, channel)
        webhook_channel_operations_total.labels(operation=operation, status="success").inc()
        logger.info(
            "webhook.registered",
            user_id=user_id,
            channel_id=channel.channel_id,
            expires_at=channel.expires_at.isoformat(),
        )
        return channel

    async def _stop_quietly(
        self, access_token: str, channel: WebhookChannel, user_id: str
    ) -> None:
        try:
            await self._channels.stop(access_token, channel.channel_id, channel.resource_id)
            webhook_channel_operations_total.labels(operation="stop", status="success").inc()
        except IntegrationError as exc:
            webhook_channel_operations_total.labels(operation="stop", status="failure").inc()
            logger.warning(
                "webhook.stop_failed",
                user_id=user_id,
                channel_id=channel.channel_id,
                error=str(exc),
            )
