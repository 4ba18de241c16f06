"""OAuth 2.0 authorization-code client for Google.

Builds consent URLs, exchanges authorization codes, and refreshes access
tokens against the token endpoint with httpx. Transport failures and 5xx/429
responses are classified as ``TransientNetworkError`` and retried with
tenacity (3 attempts, exponential backoff 1-10s). Provider rejections (4xx)
are never retried:

- code exchange  -> ``TokenExchangeError`` (expired, reused, redirect mismatch)
- token refresh  -> ``RefreshError`` (revoked / expired refresh token)
- invalid_client -> ``ConfigurationError`` on refresh
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.crm_connect.core.monitoring import (
    oauth_token_exchanges_total,
    oauth_token_refreshes_total,
)
from src.crm_connect.integrations.credentials.encryption import mask_token
from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import (
    ConfigurationError,
    RefreshError,
    TokenExchangeError,
    TransientNetworkError,
)
from src.crm_connect.integrations.oauth.providers import GOOGLE_AUTH_URL, GOOGLE_TOKEN_URL

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600


class CodeLedger(Protocol):
    async def claim(self, code: str) -> bool: ...


@dataclass
class TokenSet:
    """Token endpoint response. Token values are kept out of repr."""

    access_token: str = field(repr=False)
    expires_in: int
    refresh_token: str | None = field(default=None, repr=False)
    scope: str = ""
    token_type: str = "Bearer"

    def expires_at(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in)


class OAuthExchangeClient:
    """Async client for the Google OAuth 2.0 endpoints.

    Args:
        code_ledger: Used-code ledger (Redis in production, in-memory in tests).
        token_url: Token endpoint.
        auth_url: Consent screen endpoint.
        max_attempts: Attempts per token request, including the first.
        retry_wait: tenacity wait strategy between transient failures.
    """

    TIMEOUT = 10.0

    def __init__(
        self,
        code_ledger: CodeLedger,
        token_url: str = GOOGLE_TOKEN_URL,
        auth_url: str = GOOGLE_AUTH_URL,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._ledger = code_ledger
        self._token_url = token_url
        self._auth_url = auth_url
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    # ── Consent URL ──────────────────────────────────────────────────────

    def build_authorization_url(
        self,
        client_id: str,
        redirect_uri: str,
        scopes: list[str],
        state: str,
    ) -> str:
        """Consent URL requesting offline access (so a refresh token is issued)."""
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    # ── Token endpoint ───────────────────────────────────────────────────

    async def exchange_code_for_tokens(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        service: ServiceId = ServiceId.GOOGLE_CALENDAR,
    ) -> TokenSet:
        """Exchange a single-use authorization code for tokens.

        Raises:
            TokenExchangeError: Code empty, already used, or rejected.
            TransientNetworkError: Token endpoint unreachable after retries.
        """
        if not code:
            raise TokenExchangeError("Authorization code is empty", provider_error="invalid_request")

        if not await self._ledger.claim(code):
            oauth_token_exchanges_total.labels(service=service.value, status="replayed").inc()
            logger.warning("oauth.code_replayed", service=service.value)
            raise TokenExchangeError(
                "Authorization code has already been used",
                provider_error="invalid_grant",
            )

        try:
            response = await self._post_form(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "redirect_uri": redirect_uri,
                }
            )
        except TransientNetworkError:
            oauth_token_exchanges_total.labels(service=service.value, status="network_error").inc()
            raise

        if response.status_code != 200:
            provider_error, description = _provider_error(response)
            oauth_token_exchanges_total.labels(service=service.value, status="rejected").inc()
            logger.warning(
                "oauth.code_exchange_rejected",
                service=service.value,
                status_code=response.status_code,
                provider_error=provider_error,
                description=description,
            )
            raise TokenExchangeError(
                f"Token exchange rejected: {provider_error or response.status_code}",
                provider_error=provider_error,
            )

        tokens = _parse_token_response(response)
        if tokens is None:
            oauth_token_exchanges_total.labels(service=service.value, status="rejected").inc()
            raise TokenExchangeError("Token response did not contain an access token")

        oauth_token_exchanges_total.labels(service=service.value, status="success").inc()
        logger.info(
            "oauth.code_exchanged",
            service=service.value,
            access_token=mask_token(tokens.access_token),
            has_refresh_token=tokens.refresh_token is not None,
            expires_in=tokens.expires_in,
        )
        return tokens

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str,
        *,
        service: ServiceId = ServiceId.GOOGLE_CALENDAR,
    ) -> TokenSet:
        """Obtain a fresh access token.

        The returned TokenSet has no refresh token unless the provider rotated it.

        Raises:
            RefreshError: Refresh token missing, revoked, or expired.
            ConfigurationError: The provider rejected the client credentials.
            TransientNetworkError: Token endpoint unreachable after retries.
        """
        if not refresh_token:
            raise RefreshError("No refresh token available; reconnect required")

        try:
            response = await self._post_form(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                }
            )
        except TransientNetworkError:
            oauth_token_refreshes_total.labels(service=service.value, status="network_error").inc()
            raise

        if response.status_code != 200:
            provider_error, description = _provider_error(response)
            oauth_token_refreshes_total.labels(service=service.value, status="rejected").inc()
            logger.warning(
                "oauth.refresh_rejected",
                service=service.value,
                status_code=response.status_code,
                provider_error=provider_error,
                description=description,
            )
            if provider_error == "invalid_client":
                raise ConfigurationError("OAuth client credentials were rejected by the provider")
            raise RefreshError(
                f"Refresh token rejected: {provider_error or response.status_code}",
                provider_error=provider_error,
            )

        tokens = _parse_token_response(response)
        if tokens is None:
            oauth_token_refreshes_total.labels(service=service.value, status="rejected").inc()
            raise RefreshError("Refresh response did not contain an access token")

        oauth_token_refreshes_total.labels(service=service.value, status="success").inc()
        logger.info(
            "oauth.token_refreshed",
            service=service.value,
            access_token=mask_token(tokens.access_token),
            rotated=tokens.refresh_token is not None,
            expires_in=tokens.expires_in,
        )
        return tokens

    async def _post_form(self, form: dict[str, str]) -> httpx.Response:
        response: httpx.Response | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        ):
            with attempt:
                response = await self._send(form)
        assert response is not None
        return response

    async def _send(self, form: dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.TIMEOUT) as client:
                response = await client.post(
                    self._token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as exc:
            logger.warning("oauth.token_endpoint_unreachable", error=type(exc).__name__)
            raise TransientNetworkError(
                f"Token endpoint unreachable: {type(exc).__name__}"
            ) from exc

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("oauth.token_endpoint_unavailable", status_code=response.status_code)
            raise TransientNetworkError(f"Token endpoint returned {response.status_code}")
        return response


def _provider_error(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract (error, error_description) from an OAuth error body."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")


def _parse_token_response(response: httpx.Response) -> TokenSet | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict) or not body.get("access_token"):
        return None
    return TokenSet(
        access_token=body["access_token"],
        expires_in=int(body.get("expires_in") or DEFAULT_EXPIRES_IN),
        refresh_token=body.get("refresh_token") or None,
        scope=body.get("scope", ""),
        token_type=body.get("token_type", "Bearer"),
    )
