"""Push notifications, import reconciliation and two-way sync for Google Calendar.

Google sends a ``sync`` handshake when a channel opens and ``exists`` /
``not_exists`` when something in the watched collection changes. The
notification carries no event data, so a change only triggers a
reconciliation pass that re-lists the user's events window.

Attribution: ``X-Goog-Channel-Token`` names the user and
``X-Goog-Channel-ID`` must equal the user's *current* channel id. Anything
else (unknown user, disconnected credential, superseded channel) is dropped
without touching state.

A user-triggered sync first pushes upcoming CRM-created events to Google
(tagged with ``extendedProperties.private.crmEventId``), then reconciles.

All Google API calls are wrapped in asyncio.to_thread() to avoid blocking
the event loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from src.crm_connect.core.monitoring import webhook_notifications_total
from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import AttributionError, IntegrationError
from src.crm_connect.integrations.google_calendar.events import (
    STATUS_CANCELLED,
    CalendarEvent,
    CalendarEventRepository,
)
from src.crm_connect.integrations.google_calendar.mapping import (
    crm_event_to_google,
    google_event_to_crm,
)
from src.crm_connect.integrations.oauth.tokens import CredentialTokenManager

if TYPE_CHECKING:
    from src.crm_connect.integrations.credentials.repository import CredentialRepository

logger = structlog.get_logger(__name__)

SYNC_WINDOW_PAST = timedelta(days=7)
SYNC_WINDOW_FUTURE = timedelta(days=30)
PAGE_SIZE = 250


class NotificationOutcome(str, Enum):
    HANDSHAKE = "handshake"
    RECONCILE_SCHEDULED = "reconcile_scheduled"
    DROPPED = "dropped"
    IGNORED = "ignored"


@dataclass
class WebhookNotification:
    channel_id: str
    resource_state: str
    resource_id: str | None = None
    channel_token: str | None = None
    message_number: int | None = None


@dataclass
class NotificationResult:
    outcome: NotificationOutcome
    user_id: str | None = None


@dataclass
class ReconcileResult:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: int = 0
    error: str | None = None


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    imported: int = 0
    failed: int = 0
    error: str | None = None


def parse_notification(headers: Mapping[str, str]) -> WebhookNotification | None:
    """Read the X-Goog-* headers. Returns None if they are not present."""
    lowered = {k.lower(): v for k, v in headers.items()}
    channel_id = lowered.get("x-goog-channel-id")
    resource_state = lowered.get("x-goog-resource-state")
    if not channel_id or not resource_state:
        return None

    message_number = None
    raw_number = lowered.get("x-goog-message-number")
    if raw_number and raw_number.isdigit():
        message_number = int(raw_number)

    return WebhookNotification(
        channel_id=channel_id,
        resource_state=resource_state.lower(),
        resource_id=lowered.get("x-goog-resource-id"),
        channel_token=lowered.get("x-goog-channel-token"),
        message_number=message_number,
    )


def _build_calendar_service(access_token: str) -> Any:
    credentials = Credentials(token=access_token)
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


class CalendarSyncOrchestrator:
    """Consume push notifications and reconcile Google events into the CRM.

    Args:
        repository: Credential persistence (attribution, last_synced_at).
        event_repository: Target table for imported events.
        token_manager: Supplies valid access tokens.
        service_builder: Builds a Calendar API resource from an access
            token. Defaults to googleapiclient discovery.
    """

    service = ServiceId.GOOGLE_CALENDAR

    def __init__(
        self,
        repository: CredentialRepository,
        event_repository: CalendarEventRepository,
        token_manager: CredentialTokenManager,
        service_builder: Callable[[str], Any] | None = None,
    ) -> None:
        self._repository = repository
        self._events = event_repository
        self._tokens = token_manager
        self._service_builder = service_builder or _build_calendar_service

    # ── Notifications ────────────────────────────────────────────────────

    async def handle_notification(self, notification: WebhookNotification) -> NotificationResult:
        state = notification.resource_state

        if state == "sync":
            result = NotificationResult(NotificationOutcome.HANDSHAKE)
        elif state in ("exists", "not_exists"):
            try:
                user_id = await self._attribute(notification)
            except AttributionError as exc:
                logger.warning(
                    "google_calendar.notification_dropped",
                    channel_id=notification.channel_id,
                    resource_state=state,
                    reason=str(exc),
                )
                result = NotificationResult(NotificationOutcome.DROPPED)
            else:
                result = NotificationResult(NotificationOutcome.RECONCILE_SCHEDULED, user_id)
        else:
            result = NotificationResult(NotificationOutcome.IGNORED)

        webhook_notifications_total.labels(
            resource_state=state, outcome=result.outcome.value
        ).inc()
        logger.info(
            "google_calendar.notification_handled",
            channel_id=notification.channel_id,
            resource_state=state,
            message_number=notification.message_number,
            outcome=result.outcome.value,
            user_id=result.user_id,
        )
        return result

    async def _attribute(self, notification: WebhookNotification) -> str:
        user_id = notification.channel_token
        if not user_id:
            raise AttributionError("Notification carries no channel token")

        record = await self._repository.get(user_id, self.service)
        if record is None or not record.is_active:
            raise AttributionError("No active Google Calendar credential for channel token")
        if record.webhook_channel_id != notification.channel_id:
            raise AttributionError("Channel id does not match the user's current channel")
        if (
            notification.resource_id
            and record.webhook_resource_id
            and notification.resource_id != record.webhook_resource_id
        ):
            raise AttributionError("Resource id does not match the user's current channel")
        return user_id

    # ── Reconciliation ───────────────────────────────────────────────────

    async def reconcile(self, user_id: str) -> ReconcileResult:
        """Import the user's events window into the CRM.

        Never raises: failures are logged and reported in ``error``.
        """
        try:
            access_token = await self._tokens.get_valid_access_token(user_id, self.service)
        except IntegrationError as exc:
            logger.warning("google_calendar.reconcile_skipped", user_id=user_id, reason=exc.code)
            return ReconcileResult(error=exc.code)

        now = datetime.now(timezone.utc)
        time_min = now - SYNC_WINDOW_PAST
        time_max = now + SYNC_WINDOW_FUTURE

        try:
            items = await asyncio.to_thread(self._list_events, access_token, time_min, time_max)
        except (HttpError, OSError) as exc:
            logger.warning(
                "google_calendar.list_events_failed",
                user_id=user_id,
                error=str(exc),
            )
            return ReconcileResult(error="provider_error")

        result = ReconcileResult()
        to_upsert: list[CalendarEvent] = []
        cancelled_ids: list[str] = []

        for item in items:
            if item.get("status") == "cancelled":
                if item.get("id"):
                    cancelled_ids.append(item["id"])
                continue
            try:
                event = google_event_to_crm(item)
            except ValueError as exc:
                logger.warning(
                    "google_calendar.event_unparseable",
                    user_id=user_id,
                    google_event_id=item.get("id"),
                    error=str(exc),
                )
                event = None
            if event is None:
                result.skipped += 1
                continue
            to_upsert.append(event)

        try:
            result.imported, result.updated = await self._events.upsert_many(user_id, to_upsert)
            result.cancelled = await self._events.mark_cancelled(user_id, cancelled_ids)
            await self._repository.mark_synced(user_id, self.service, now)
        except Exception:
            logger.error("google_calendar.reconcile_store_failed", user_id=user_id, exc_info=True)
            result.error = "storage_error"
            return result

        logger.info(
            "google_calendar.reconciled",
            user_id=user_id,
            fetched=len(items),
            imported=result.imported,
            updated=result.updated,
            skipped=result.skipped,
            cancelled=result.cancelled,
        )
        return result

    def _list_events(
        self, access_token: str, time_min: datetime, time_max: datetime
    ) -> list[dict]:
        service = self._service_builder(access_token)
        items: list[dict] = []
        page_token: str | None = None

        while True:
            response = (
                service.events()
                .list(
                    calendarId="primary",
                    timeMin=time_min.isoformat(),
                    timeMax=time_max.isoformat(),
                    singleEvents=True,
                    showDeleted=True,
                    maxResults=PAGE_SIZE,
                    pageToken=page_token,
                )
                .execute()
            )
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    # ── Two-way sync ─────────────────────────────────────────────────────

    async def sync(self, user_id: str) -> SyncResult:
        """Push upcoming CRM events to Google, then import Google's changes.

        CRM events without a Google id are created in Google and linked;
        linked ones are updated in place. A failure on one event is counted
        in ``failed`` and does not stop the pass.

        Raises:
            NotConnectedError / RefreshError / ConfigurationError: No usable
                access token; nothing was pushed.
        """
        access_token = await self._tokens.get_valid_access_token(user_id, self.service)
        now = datetime.now(timezone.utc)
        result = SyncResult()

        try:
            outbound = await self._events.list_outbound(user_id, now)
        except Exception:
            logger.error("google_calendar.outbound_load_failed", user_id=user_id, exc_info=True)
            result.error = "storage_error"
            return result

        if outbound:
            try:
                calendar = await asyncio.to_thread(self._service_builder, access_token)
            except (HttpError, OSError) as exc:
                logger.warning("google_calendar.calendar_client_failed", user_id=user_id, error=str(exc))
                result.error = "provider_error"
                return result

            for event in outbound:
                if event.google_event_id is None and event.status == STATUS_CANCELLED:
                    continue
                await self._push_one(user_id, calendar, event, result)

        reconciled = await self.reconcile(user_id)
        result.imported = reconciled.imported
        result.error = reconciled.error

        logger.info(
            "google_calendar.synced",
            user_id=user_id,
            created=result.created,
            updated=result.updated,
            imported=result.imported,
            failed=result.failed,
        )
        return result

    async def _push_one(
        self, user_id: str, calendar: Any, event: CalendarEvent, result: SyncResult
    ) -> None:
        try:
            google_id, created = await asyncio.to_thread(self._write_event, calendar, event)
        except (HttpError, OSError) as exc:
            logger.warning(
                "google_calendar.push_event_failed",
                user_id=user_id,
                event_id=str(event.id),
                error=str(exc),
            )
            result.failed += 1
            return

        if not created:
            result.updated += 1
            return

        try:
            await self._events.link_google_event(event.id, google_id)
        except Exception:
            logger.error(
                "google_calendar.link_failed",
                user_id=user_id,
                event_id=str(event.id),
                google_event_id=google_id,
                exc_info=True,
            )
            result.failed += 1
            return
        result.created += 1

    @staticmethod
    def _write_event(calendar: Any, event: CalendarEvent) -> tuple[str, bool]:
        """Update the linked Google event, or create one. Returns (id, created)."""
        body = crm_event_to_google(event)
        events = calendar.events()

        if event.google_event_id:
            try:
                response = events.update(
                    calendarId="primary", eventId=event.google_event_id, body=body
                ).execute()
                return response["id"], False
            except HttpError as exc:
                if exc.resp.status not in (404, 410):
                    raise
                # Deleted on the Google side
                if event.status == STATUS_CANCELLED:
                    return event.google_event_id, False

        response = events.insert(calendarId="primary", body=body).execute()
        return response["id"], True
