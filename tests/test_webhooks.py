"""Tests for the Google Calendar push channel lifecycle.

Uses the in-memory credential repository and FakeChannelClient from
conftest; the channel client itself is tested against patched httpx.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.crm_connect.core.locks import LocalLockProvider, LockAcquireError, RedisLockProvider
from src.crm_connect.integrations.credentials.schemas import ServiceId, WebhookChannel
from src.crm_connect.integrations.errors import (
    IntegrationError,
    RefreshError,
    TransientNetworkError,
    WebhookRegistrationError,
)
from src.crm_connect.integrations.google_calendar import (
    GoogleCalendarChannelClient,
    RenewalOutcome,
)
from src.crm_connect.integrations.google_calendar.webhooks import CHANNEL_ID_PREFIX, WEBHOOK_PATH

USER_ID = "user-1"
CALENDAR = ServiceId.GOOGLE_CALENDAR


def channel_expiring_in(delta: timedelta, channel_id: str = "crm-old-channel") -> WebhookChannel:
    return WebhookChannel(
        channel_id=channel_id,
        resource_id="resource-old",
        expires_at=datetime.now(timezone.utc) + delta,
    )


# ── check_and_renew ──────────────────────────────────────────────────────────


class TestCheckAndRenew:
    async def test_channel_with_more_than_a_day_left_is_untouched(
        self, webhook_manager, credential_repo, channel_client
    ):
        old = channel_expiring_in(timedelta(hours=48))
        credential_repo.seed(webhook=old)

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.STILL_VALID
        assert channel_client.watch_calls == []
        assert channel_client.stop_calls == []
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook == old

    async def test_expiring_channel_is_replaced(
        self, webhook_manager, credential_repo, channel_client
    ):
        old = channel_expiring_in(timedelta(hours=12))
        credential_repo.seed(webhook=old)

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.RENEWED
        assert channel_client.stop_calls == [
            {
                "access_token": "ya29.stored-access-token",
                "channel_id": "crm-old-channel",
                "resource_id": "resource-old",
            }
        ]
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook_channel_id != old.channel_id
        assert record.webhook_channel_id.startswith(CHANNEL_ID_PREFIX)
        assert record.webhook_expires_at > old.expires_at

    async def test_missing_channel_is_registered(
        self, webhook_manager, credential_repo, channel_client, settings
    ):
        credential_repo.seed()

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.REGISTERED
        assert len(channel_client.watch_calls) == 1
        call = channel_client.watch_calls[0]
        assert call["token"] == USER_ID
        assert call["address"] == f"{settings.WEBHOOK_BASE_URL}{WEBHOOK_PATH}"
        assert channel_client.stop_calls == []
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook is not None

    async def test_partial_channel_is_treated_as_unregistered(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed()
        credential_repo._patch(USER_ID, CALENDAR, webhook_channel_id="crm-orphan")

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.REGISTERED
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.has_partial_webhook is False
        assert record.webhook_channel_id != "crm-orphan"

    async def test_inactive_credential_is_not_connected(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(is_active=False, webhook=channel_expiring_in(timedelta(hours=1)))

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.NOT_CONNECTED
        assert channel_client.watch_calls == []

    async def test_unknown_user_is_not_connected(self, webhook_manager):
        assert await webhook_manager.check_and_renew("nobody") == RenewalOutcome.NOT_CONNECTED

    async def test_expired_access_token_is_refreshed_before_watch(
        self, webhook_manager, credential_repo, channel_client, oauth_client
    ):
        credential_repo.seed(
            expires_in=timedelta(minutes=-10),
            webhook=channel_expiring_in(timedelta(hours=2)),
        )

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.RENEWED
        assert oauth_client.refresh_calls == ["1//stored-refresh-token"]
        assert channel_client.watch_calls[0]["access_token"] == "ya29.refreshed-access-token"

    async def test_revoked_refresh_token_propagates(
        self, webhook_manager, credential_repo, channel_client, oauth_client
    ):
        old = channel_expiring_in(timedelta(hours=2))
        credential_repo.seed(expires_in=timedelta(minutes=-10), webhook=old)
        oauth_client.refresh_error = RefreshError("revoked")

        with pytest.raises(RefreshError):
            await webhook_manager.check_and_renew(USER_ID)

        assert channel_client.watch_calls == []
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook == old

    async def test_stop_failure_does_not_block_renewal(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(webhook=channel_expiring_in(timedelta(hours=3)))
        channel_client.stop_error = TransientNetworkError("unreachable")

        outcome = await webhook_manager.check_and_renew(USER_ID)

        assert outcome == RenewalOutcome.RENEWED
        assert len(channel_client.watch_calls) == 1

    async def test_registration_failure_keeps_old_channel(
        self, webhook_manager, credential_repo, channel_client
    ):
        old = channel_expiring_in(timedelta(hours=3))
        credential_repo.seed(webhook=old)
        channel_client.watch_error = WebhookRegistrationError("rejected")

        with pytest.raises(WebhookRegistrationError):
            await webhook_manager.check_and_renew(USER_ID)

        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook == old

    async def test_granted_expiry_is_capped_at_seven_days(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed()
        channel_client.granted_ttl = timedelta(days=30)

        await webhook_manager.check_and_renew(USER_ID)

        record = await credential_repo.get(USER_ID, CALENDAR)
        ceiling = datetime.now(timezone.utc) + timedelta(days=7)
        assert record.webhook_expires_at <= ceiling

    async def test_shorter_granted_expiry_is_kept(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed()
        channel_client.granted_ttl = timedelta(days=1)

        await webhook_manager.check_and_renew(USER_ID)

        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook.hours_until_expiry() == pytest.approx(24.0, abs=0.1)

    async def test_concurrent_checks_renew_once(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(webhook=channel_expiring_in(timedelta(hours=2)))

        outcomes = await asyncio.gather(
            webhook_manager.check_and_renew(USER_ID),
            webhook_manager.check_and_renew(USER_ID),
        )

        assert sorted(o.value for o in outcomes) == ["renewed", "still_valid"]
        assert len(channel_client.watch_calls) == 1
        assert len(channel_client.stop_calls) == 1


# ── register ─────────────────────────────────────────────────────────────────


class TestRegister:
    async def test_each_registration_gets_a_new_id_and_last_one_wins(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed()

        first = await webhook_manager.register("ya29.token", USER_ID)
        second = await webhook_manager.register("ya29.token", USER_ID)

        assert first.channel_id != second.channel_id
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.webhook_channel_id == second.channel_id

    async def test_register_requires_active_credential(self, webhook_manager, credential_repo):
        credential_repo.seed(is_active=False)
        with pytest.raises(IntegrationError) as exc_info:
            await webhook_manager.register("ya29.token", USER_ID)
        assert exc_info.value.code == "not_connected"


# ── disconnect ───────────────────────────────────────────────────────────────


class TestDisconnect:
    async def test_stops_channel_and_deactivates(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(webhook=channel_expiring_in(timedelta(days=5)))

        assert await webhook_manager.disconnect(USER_ID) is True

        assert channel_client.stop_calls[0]["channel_id"] == "crm-old-channel"
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.is_active is False
        assert record.webhook_channel_id is None
        assert record.webhook_resource_id is None
        assert record.webhook_expires_at is None

    async def test_disconnect_is_idempotent(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(webhook=channel_expiring_in(timedelta(days=5)))

        await webhook_manager.disconnect(USER_ID)
        assert await webhook_manager.disconnect(USER_ID) is True

        assert len(channel_client.stop_calls) == 1

    async def test_unknown_user(self, webhook_manager):
        assert await webhook_manager.disconnect("nobody") is False

    async def test_revoked_token_still_disconnects(
        self, webhook_manager, credential_repo, channel_client, oauth_client
    ):
        credential_repo.seed(
            expires_in=timedelta(minutes=-10),
            webhook=channel_expiring_in(timedelta(days=5)),
        )
        oauth_client.refresh_error = RefreshError("revoked")

        assert await webhook_manager.disconnect(USER_ID) is True

        assert channel_client.stop_calls == []
        record = await credential_repo.get(USER_ID, CALENDAR)
        assert record.is_active is False
        assert record.webhook is None


# ── renew_all ────────────────────────────────────────────────────────────────


class TestRenewAll:
    async def test_one_failure_does_not_stop_the_pass(
        self, webhook_manager, credential_repo, oauth_client
    ):
        credential_repo.seed("user-ok", webhook=channel_expiring_in(timedelta(days=3)))
        credential_repo.seed("user-renew", webhook=channel_expiring_in(timedelta(hours=1)))
        credential_repo.seed(
            "user-revoked",
            expires_in=timedelta(minutes=-1),
            webhook=channel_expiring_in(timedelta(hours=1)),
        )
        credential_repo.seed("user-gone", is_active=False)
        oauth_client.refresh_error = RefreshError("revoked")

        reports = {r.user_id: r for r in await webhook_manager.renew_all()}

        assert set(reports) == {"user-ok", "user-renew", "user-revoked"}
        assert reports["user-ok"].outcome == RenewalOutcome.STILL_VALID
        assert reports["user-renew"].outcome == RenewalOutcome.RENEWED
        assert reports["user-revoked"].success is False
        assert reports["user-revoked"].error == "reconnect_required"

    async def test_unexpected_error_reported_as_internal(
        self, webhook_manager, credential_repo, channel_client
    ):
        credential_repo.seed(webhook=channel_expiring_in(timedelta(hours=1)))
        channel_client.watch_error = RuntimeError("boom")

        reports = await webhook_manager.renew_all()

        assert reports[0].success is False
        assert reports[0].error == "internal_error"


# ── Channel client (HTTP) ────────────────────────────────────────────────────


def _google_response(status_code: int, body: dict) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=body,
        request=httpx.Request("POST", "https://www.googleapis.com/calendar/v3"),
    )


class TestGoogleCalendarChannelClient:
    async def test_watch_parses_millisecond_expiration(self):
        body = {
            "kind": "api#channel",
            "id": "crm-abc",
            "resourceId": "res-xyz",
            "resourceUri": "https://www.googleapis.com/calendar/v3/calendars/primary/events",
            "expiration": "1767225600000",
        }
        requested = datetime(2026, 1, 5, tzinfo=timezone.utc)
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_google_response(200, body),
        ) as mock_post:
            channel = await GoogleCalendarChannelClient().watch(
                "ya29.token",
                channel_id="crm-abc",
                address="https://crm.example.com/webhook",
                token=USER_ID,
                expiration=requested,
            )

        assert channel.channel_id == "crm-abc"
        assert channel.resource_id == "res-xyz"
        assert channel.expires_at == datetime(2026, 1, 1, tzinfo=timezone.utc)

        url = mock_post.call_args.args[0]
        sent = mock_post.call_args.kwargs["json"]
        assert url.endswith("/calendars/primary/events/watch")
        assert sent["type"] == "web_hook"
        assert sent["token"] == USER_ID
        assert sent["expiration"] == int(requested.timestamp() * 1000)

    async def test_watch_rejected(self):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_google_response(
                400, {"error": {"code": 400, "message": "Unauthorized WebHook callback channel"}}
            ),
        ):
            with pytest.raises(WebhookRegistrationError, match="Unauthorized WebHook"):
                await GoogleCalendarChannelClient().watch(
                    "ya29.token",
                    channel_id="crm-abc",
                    address="https://crm.example.com/webhook",
                    token=USER_ID,
                    expiration=datetime.now(timezone.utc),
                )

    async def test_stop_treats_404_as_stopped(self):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_google_response(404, {"error": {"code": 404, "message": "Not Found"}}),
        ):
            await GoogleCalendarChannelClient().stop("ya29.token", "crm-abc", "res-xyz")

    async def test_stop_transport_error(self):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.ReadError("reset"),
        ):
            with pytest.raises(TransientNetworkError):
                await GoogleCalendarChannelClient().stop("ya29.token", "crm-abc", "res-xyz")

    async def test_stop_rejected(self):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_google_response(403, {"error": {"code": 403, "message": "Forbidden"}}),
        ):
            with pytest.raises(IntegrationError) as exc_info:
                await GoogleCalendarChannelClient().stop("ya29.token", "crm-abc", "res-xyz")
        assert exc_info.value.code == "channel_stop_failed"


# ── Lock providers ───────────────────────────────────────────────────────────


class TestLockProviders:
    async def test_local_lock_times_out(self):
        provider = LocalLockProvider(blocking_timeout=0.05)
        async with provider.lock("webhook:google_calendar:user-1"):
            with pytest.raises(LockAcquireError):
                async with provider.lock("webhook:google_calendar:user-1"):
                    pass

    async def test_local_locks_are_per_key(self):
        provider = LocalLockProvider(blocking_timeout=0.05)
        async with provider.lock("a"):
            async with provider.lock("b"):
                pass

    async def test_redis_lock_acquire_and_release(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        redis_client = MagicMock()
        redis_client.lock.return_value = lock

        async with RedisLockProvider(redis_client, timeout=60, blocking_timeout=5).lock("k"):
            pass

        redis_client.lock.assert_called_once_with("lock:k", timeout=60, blocking_timeout=5)
        lock.release.assert_awaited_once()

    async def test_redis_lock_busy(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        redis_client = MagicMock()
        redis_client.lock.return_value = lock

        with pytest.raises(LockAcquireError):
            async with RedisLockProvider(redis_client).lock("k"):
                pass
