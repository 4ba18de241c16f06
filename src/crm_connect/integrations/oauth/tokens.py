"""Resolve a usable access token for a stored credential."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from src.crm_connect.config import Settings
from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import NotConnectedError, RefreshError
from src.crm_connect.integrations.oauth.client import OAuthExchangeClient
from src.crm_connect.integrations.oauth.providers import get_provider_config

if TYPE_CHECKING:
    from src.crm_connect.integrations.credentials.repository import CredentialRepository

logger = structlog.get_logger(__name__)

# Refresh when fewer than this many seconds of validity remain
REFRESH_SKEW_SECONDS = 300


class CredentialTokenManager:
    """Returns a valid access token, refreshing and persisting when needed.

    The record is re-read on every call; there is no in-memory token cache.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        client: OAuthExchangeClient,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._client = client
        self._settings = settings

    async def get_valid_access_token(self, user_id: str, service: ServiceId) -> str:
        """Raises NotConnectedError, RefreshError, or TransientNetworkError."""
        record = await self._repository.get(user_id, service)
        if record is None or not record.is_active:
            raise NotConnectedError(f"{service.value} is not connected for this user")

        if not record.is_token_expired(skew_seconds=REFRESH_SKEW_SECONDS):
            return record.access_token.get_secret_value()

        if record.refresh_token is None:
            logger.warning("oauth.reconnect_required", user_id=user_id, service=service.value)
            raise RefreshError("Access token expired and no refresh token is stored")

        config = get_provider_config(self._settings, service)
        try:
            tokens = await self._client.refresh_access_token(
                record.refresh_token.get_secret_value(),
                config.client_id,
                config.client_secret,
                service=service,
            )
        except RefreshError:
            logger.warning("oauth.reconnect_required", user_id=user_id, service=service.value)
            raise

        await self._repository.update_access_token(
            user_id,
            service,
            tokens.access_token,
            tokens.expires_at(),
            refresh_token=tokens.refresh_token,
        )
        return tokens.access_token
