"""Google Calendar integration: push channels, notifications, import sync.

Exports:
    GoogleCalendarChannelClient: events.watch / channels.stop over httpx.
    WebhookSubscriptionManager: Channel register/renew/disconnect lifecycle.
    RenewalOutcome / RenewalReport: Results of renewal checks.
    CalendarSyncOrchestrator: Notification attribution, reconciliation and
        user-triggered two-way sync.
    WebhookRenewalScheduler: Interval job running renew-all.
"""

from src.crm_connect.integrations.google_calendar.channels import GoogleCalendarChannelClient
from src.crm_connect.integrations.google_calendar.events import (
    CalendarEvent,
    CalendarEventModel,
    CalendarEventRepository,
)
from src.crm_connect.integrations.google_calendar.scheduler import WebhookRenewalScheduler
from src.crm_connect.integrations.google_calendar.sync import (
    CalendarSyncOrchestrator,
    NotificationOutcome,
    NotificationResult,
    ReconcileResult,
    SyncResult,
    WebhookNotification,
    parse_notification,
)
from src.crm_connect.integrations.google_calendar.webhooks import (
    RenewalOutcome,
    RenewalReport,
    WebhookSubscriptionManager,
)

__all__ = [
    "CalendarEvent",
    "CalendarEventModel",
    "CalendarEventRepository",
    "CalendarSyncOrchestrator",
    "GoogleCalendarChannelClient",
    "NotificationOutcome",
    "NotificationResult",
    "ReconcileResult",
    "RenewalOutcome",
    "RenewalReport",
    "SyncResult",
    "WebhookNotification",
    "WebhookRenewalScheduler",
    "WebhookSubscriptionManager",
    "parse_notification",
]
