"""Google Calendar push-notification channel client.

Thin httpx wrapper over ``events.watch`` and ``channels.stop``. Transport
errors are retried (3 attempts, exponential backoff 1-10s) in the same way
as the other REST clients; provider rejections are not.

Google returns the channel expiration as a string of epoch milliseconds.
"""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm_connect.integrations.credentials.schemas import WebhookChannel
from src.crm_connect.integrations.errors import (
    IntegrationError,
    TransientNetworkError,
    WebhookRegistrationError,
)

logger = structlog.get_logger(__name__)

_channel_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or response.reason_phrase
    return str(error or response.reason_phrase)


class GoogleCalendarChannelClient:
    """Register and stop Calendar push channels for one user's token.

    Args:
        base_url: Calendar API v3 root.
    """

    BASE_URL = "https://www.googleapis.com/calendar/v3"

    # Timeouts per operation type
    TIMEOUT_MUTATE = 30.0

    def __init__(self, base_url: str = BASE_URL) -> None:
        self._base_url = base_url.rstrip("/")

    def _client(self, access_token: str, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client authorised with the user's token."""
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @_channel_retry
    async def _post(self, access_token: str, path: str, body: dict) -> httpx.Response:
        async with self._client(access_token, self.TIMEOUT_MUTATE) as client:
            return await client.post(f"{self._base_url}{path}", json=body)

    async def watch(
        self,
        access_token: str,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
        calendar_id: str = "primary",
    ) -> WebhookChannel:
        """Open a push channel on the calendar's events collection.

        Args:
            access_token: Valid OAuth access token.
            channel_id: Caller-generated unique channel id.
            address: Public HTTPS URL notifications are POSTed to.
            token: Opaque value echoed back in X-Goog-Channel-Token.
            expiration: Requested expiry; Google may shorten it.

        Returns:
            The channel as granted by Google.

        Raises:
            WebhookRegistrationError: If the request fails or is rejected.
        """
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "expiration": int(expiration.timestamp() * 1000),
        }
        try:
            response = await self._post(
                access_token, f"/calendars/{calendar_id}/events/watch", body
            )
        except httpx.HTTPError as exc:
            raise WebhookRegistrationError(
                f"Channel registration failed: {type(exc).__name__}"
            ) from exc

        if response.status_code != 200:
            reason = _error_reason(response)
            logger.warning(
                "google_calendar.watch_rejected",
                channel_id=channel_id,
                status_code=response.status_code,
                reason=reason,
            )
            raise WebhookRegistrationError(
                f"Channel registration rejected ({response.status_code}): {reason}"
            )

        data = response.json()
        resource_id = data.get("resourceId")
        if not resource_id:
            raise WebhookRegistrationError("Channel registration response has no resourceId")

        granted = expiration
        if data.get("expiration"):
            granted = datetime.fromtimestamp(int(data["expiration"]) / 1000, tz=timezone.utc)

        logger.info(
            "google_calendar.channel_opened",
            channel_id=channel_id,
            resource_id=resource_id,
            expires_at=granted.isoformat(),
        )
        return WebhookChannel(
            channel_id=data.get("id", channel_id),
            resource_id=resource_id,
            expires_at=granted,
        )

    async def stop(self, access_token: str, channel_id: str, resource_id: str) -> None:
        """Stop a channel. A channel Google no longer knows counts as stopped.

        Raises:
            TransientNetworkError: If Google could not be reached.
            IntegrationError: If Google rejected the request.
        """
        try:
            response = await self._post(
                access_token,
                "/channels/stop",
                {"id": channel_id, "resourceId": resource_id},
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError(
                f"Channel stop failed: {type(exc).__name__}"
            ) from exc

        if response.status_code == 404:
            logger.info("google_calendar.channel_already_gone", channel_id=channel_id)
            return
        if response.status_code not in (200, 204):
            raise IntegrationError(
                f"Channel stop rejected ({response.status_code}): {_error_reason(response)}",
                code="channel_stop_failed",
            )
        logger.info("google_calendar.channel_stopped", channel_id=channel_id)
