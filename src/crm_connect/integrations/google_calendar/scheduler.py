"""Background scheduler for push channel renewal.

Google Calendar channels live at most seven days, so an interval job runs
``WebhookSubscriptionManager.renew_all`` often enough that every channel is
seen at least once inside its 24 hour renewal window.

Exports:
    WebhookRenewalScheduler: AsyncIOScheduler wrapper with one interval job.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.crm_connect.integrations.google_calendar.webhooks import WebhookSubscriptionManager

logger = structlog.get_logger(__name__)


class WebhookRenewalScheduler:
    """Periodic renew-all for Google Calendar push channels.

    Args:
        manager: WebhookSubscriptionManager that performs the renewals.
        interval_minutes: Minutes between passes.
    """

    def __init__(
        self,
        manager: WebhookSubscriptionManager,
        interval_minutes: int = 60,
    ) -> None:
        self._manager = manager
        self._interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if it is already running."""
        if self._started:
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._renew_all,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id="google_calendar_webhook_renewal",
            name="Renew expiring Google Calendar push channels",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            "webhook_renewal_scheduler_started",
            interval_minutes=self._interval_minutes,
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("webhook_renewal_scheduler_stopped")

    async def _renew_all(self) -> None:
        logger.info("webhook_renewal_triggered")
        try:
            reports = await self._manager.renew_all()
        except Exception as exc:
            logger.error("webhook_renewal_failed", error=str(exc), exc_info=True)
            return
        failed = [r.user_id for r in reports if not r.success]
        if failed:
            logger.warning("webhook_renewal_partial_failure", failed_users=failed)
