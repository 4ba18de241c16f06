"""Tests for the OAuth exchange client, signed state, code ledger and token manager.

The token endpoint is mocked by patching httpx.AsyncClient.post; retries use
tenacity's wait_none() so no test sleeps.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from jose import jwt
from tenacity import wait_none

from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import (
    AttributionError,
    ConfigurationError,
    NotConnectedError,
    RefreshError,
    TokenExchangeError,
    TransientNetworkError,
)
from src.crm_connect.integrations.oauth import (
    InMemoryCodeLedger,
    OAuthExchangeClient,
    OAuthStateSigner,
    RedisCodeLedger,
    get_provider_config,
)
from src.crm_connect.integrations.oauth.providers import CALENDAR_SCOPES, GMAIL_SCOPES

USER_ID = "user-1"

TOKEN_URL = "https://oauth2.googleapis.com/token"


def _response(status_code: int, body: dict) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=body,
        request=httpx.Request("POST", TOKEN_URL),
    )


TOKEN_BODY = {
    "access_token": "ya29.a0AfH6SMBnewaccesstoken",
    "refresh_token": "1//0gnewrefreshtoken",
    "expires_in": 3599,
    "scope": "https://www.googleapis.com/auth/calendar.events",
    "token_type": "Bearer",
}


@pytest.fixture
def client() -> OAuthExchangeClient:
    return OAuthExchangeClient(code_ledger=InMemoryCodeLedger(), retry_wait=wait_none())


# ── Authorization URL ────────────────────────────────────────────────────────


class TestAuthorizationUrl:
    def test_requests_offline_access_with_consent(self, client):
        url = client.build_authorization_url(
            "client-id", "https://crm.example.com/callback", CALENDAR_SCOPES, "signed-state"
        )
        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert parsed.netloc == "accounts.google.com"
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == ["https://crm.example.com/callback"]
        assert params["response_type"] == ["code"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["state"] == ["signed-state"]
        assert params["scope"] == [" ".join(CALENDAR_SCOPES)]


# ── Code exchange ────────────────────────────────────────────────────────────


class TestExchangeCode:
    async def test_success_returns_token_set(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, TOKEN_BODY),
        ) as mock_post:
            tokens = await client.exchange_code_for_tokens(
                "4/0abc", "client-id", "client-secret", "https://crm.example.com/callback"
            )

        assert tokens.access_token == TOKEN_BODY["access_token"]
        assert tokens.refresh_token == TOKEN_BODY["refresh_token"]
        assert tokens.expires_in == 3599
        form = mock_post.call_args.kwargs["data"]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "4/0abc"
        assert form["redirect_uri"] == "https://crm.example.com/callback"

    async def test_token_values_not_in_repr(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, TOKEN_BODY),
        ):
            tokens = await client.exchange_code_for_tokens("4/0abc", "id", "secret", "uri")

        assert TOKEN_BODY["access_token"] not in repr(tokens)
        assert TOKEN_BODY["refresh_token"] not in repr(tokens)

    async def test_reused_code_rejected_without_second_request(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, TOKEN_BODY),
        ) as mock_post:
            await client.exchange_code_for_tokens("abc123", "id", "secret", "uri")
            with pytest.raises(TokenExchangeError) as exc_info:
                await client.exchange_code_for_tokens("abc123", "id", "secret", "uri")

        assert mock_post.await_count == 1
        assert exc_info.value.provider_error == "invalid_grant"

    async def test_empty_code_rejected(self, client):
        with pytest.raises(TokenExchangeError):
            await client.exchange_code_for_tokens("", "id", "secret", "uri")

    async def test_invalid_grant_is_not_retried(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(
                400, {"error": "invalid_grant", "error_description": "Bad Request"}
            ),
        ) as mock_post:
            with pytest.raises(TokenExchangeError) as exc_info:
                await client.exchange_code_for_tokens("4/0expired", "id", "secret", "uri")

        assert mock_post.await_count == 1
        assert exc_info.value.provider_error == "invalid_grant"
        assert exc_info.value.code == "token_exchange_failed"

    async def test_missing_access_token_rejected(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, {"token_type": "Bearer"}),
        ):
            with pytest.raises(TokenExchangeError):
                await client.exchange_code_for_tokens("4/0abc", "id", "secret", "uri")


# ── Refresh ──────────────────────────────────────────────────────────────────


class TestRefresh:
    async def test_success_without_rotation(self, client):
        body = {"access_token": "ya29.refreshedtoken", "expires_in": 3600}
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(200, body),
        ) as mock_post:
            tokens = await client.refresh_access_token("1//refresh", "id", "secret")

        assert tokens.access_token == "ya29.refreshedtoken"
        assert tokens.refresh_token is None
        assert mock_post.call_args.kwargs["data"]["grant_type"] == "refresh_token"

    async def test_revoked_refresh_token_requires_reconnect(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(
                400,
                {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            ),
        ) as mock_post:
            with pytest.raises(RefreshError) as exc_info:
                await client.refresh_access_token("1//revoked", "id", "secret")

        assert mock_post.await_count == 1
        assert exc_info.value.reconnect_required is True
        assert exc_info.value.code == "reconnect_required"

    async def test_invalid_client_is_configuration_error(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=_response(401, {"error": "invalid_client"}),
        ):
            with pytest.raises(ConfigurationError):
                await client.refresh_access_token("1//refresh", "id", "wrong-secret")

    async def test_missing_refresh_token(self, client):
        with pytest.raises(RefreshError):
            await client.refresh_access_token("", "id", "secret")

    async def test_server_error_retried_then_succeeds(self, client):
        responses = [
            _response(503, {"error": "backend_error"}),
            _response(200, {"access_token": "ya29.after-retry", "expires_in": 3600}),
        ]
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=responses,
        ) as mock_post:
            tokens = await client.refresh_access_token("1//refresh", "id", "secret")

        assert mock_post.await_count == 2
        assert tokens.access_token == "ya29.after-retry"

    async def test_transport_error_exhausts_attempts(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection refused"),
        ) as mock_post:
            with pytest.raises(TransientNetworkError):
                await client.refresh_access_token("1//refresh", "id", "secret")

        assert mock_post.await_count == 3


# ── Signed state ─────────────────────────────────────────────────────────────


class TestOAuthStateSigner:
    def test_round_trip(self):
        signer = OAuthStateSigner("state-secret")
        state = signer.issue(USER_ID, ServiceId.GOOGLE_CALENDAR)
        assert signer.verify(state, ServiceId.GOOGLE_CALENDAR) == USER_ID

    def test_state_is_not_the_bare_user_id(self):
        signer = OAuthStateSigner("state-secret")
        assert signer.issue(USER_ID, ServiceId.GMAIL) != USER_ID

    def test_wrong_service_rejected(self):
        signer = OAuthStateSigner("state-secret")
        state = signer.issue(USER_ID, ServiceId.GMAIL)
        with pytest.raises(AttributionError):
            signer.verify(state, ServiceId.GOOGLE_CALENDAR)

    def test_forged_state_rejected(self):
        forged = jwt.encode(
            {"sub": "attacker", "svc": "google_calendar", "type": "oauth_state"},
            "other-secret",
            algorithm="HS256",
        )
        with pytest.raises(AttributionError):
            OAuthStateSigner("state-secret").verify(forged, ServiceId.GOOGLE_CALENDAR)

    def test_expired_state_rejected(self):
        signer = OAuthStateSigner("state-secret", ttl=timedelta(seconds=-1))
        state = signer.issue(USER_ID, ServiceId.GOOGLE_CALENDAR)
        with pytest.raises(AttributionError):
            signer.verify(state, ServiceId.GOOGLE_CALENDAR)

    def test_missing_state_rejected(self):
        with pytest.raises(AttributionError):
            OAuthStateSigner("state-secret").verify(None, ServiceId.GOOGLE_CALENDAR)


# ── Provider configuration ───────────────────────────────────────────────────


class TestProviderConfig:
    def test_calendar_config(self, settings):
        config = get_provider_config(settings, ServiceId.GOOGLE_CALENDAR)
        assert config.redirect_uri == settings.GOOGLE_CALENDAR_REDIRECT_URI
        assert config.scopes == CALENDAR_SCOPES

    def test_gmail_config(self, settings):
        config = get_provider_config(settings, ServiceId.GMAIL)
        assert config.redirect_uri == settings.GMAIL_REDIRECT_URI
        assert config.scopes == GMAIL_SCOPES

    def test_missing_secret(self, settings):
        settings.GOOGLE_CLIENT_SECRET = ""
        with pytest.raises(ConfigurationError, match="GOOGLE_CLIENT_SECRET"):
            get_provider_config(settings, ServiceId.GOOGLE_CALENDAR)


# ── Code ledgers ─────────────────────────────────────────────────────────────


class TestCodeLedgers:
    async def test_in_memory_claims_once(self):
        ledger = InMemoryCodeLedger()
        assert await ledger.claim("4/0abc") is True
        assert await ledger.claim("4/0abc") is False
        assert await ledger.claim("4/0def") is True

    async def test_redis_uses_set_nx_with_digest(self):
        redis_client = AsyncMock()
        redis_client.set.side_effect = [True, None]
        ledger = RedisCodeLedger(redis_client, ttl_seconds=600)

        assert await ledger.claim("4/0abc") is True
        assert await ledger.claim("4/0abc") is False

        key = redis_client.set.call_args.args[0]
        assert key.startswith("oauth:code:")
        assert "4/0abc" not in key
        assert redis_client.set.call_args.kwargs == {"nx": True, "ex": 600}


# ── Token manager ────────────────────────────────────────────────────────────


class TestCredentialTokenManager:
    async def test_valid_token_returned_without_refresh(
        self, token_manager, credential_repo, oauth_client
    ):
        credential_repo.seed(expires_in=timedelta(hours=1))

        token = await token_manager.get_valid_access_token(USER_ID, ServiceId.GOOGLE_CALENDAR)

        assert token == "ya29.stored-access-token"
        assert oauth_client.refresh_calls == []

    async def test_token_near_expiry_is_refreshed_and_persisted(
        self, token_manager, credential_repo, oauth_client
    ):
        credential_repo.seed(expires_in=timedelta(minutes=2))

        token = await token_manager.get_valid_access_token(USER_ID, ServiceId.GOOGLE_CALENDAR)

        assert token == "ya29.refreshed-access-token"
        assert oauth_client.refresh_calls == ["1//stored-refresh-token"]
        stored = await credential_repo.get(USER_ID, ServiceId.GOOGLE_CALENDAR)
        assert stored.access_token.get_secret_value() == "ya29.refreshed-access-token"
        # Not rotated, so the original refresh token is kept
        assert stored.refresh_token.get_secret_value() == "1//stored-refresh-token"

    async def test_not_connected(self, token_manager, credential_repo):
        credential_repo.seed(is_active=False)
        with pytest.raises(NotConnectedError):
            await token_manager.get_valid_access_token(USER_ID, ServiceId.GOOGLE_CALENDAR)

    async def test_expired_without_refresh_token(self, token_manager, credential_repo):
        credential_repo.seed(refresh_token=None, expires_in=timedelta(minutes=-5))
        with pytest.raises(RefreshError):
            await token_manager.get_valid_access_token(USER_ID, ServiceId.GOOGLE_CALENDAR)

    async def test_revoked_refresh_token_propagates(
        self, token_manager, credential_repo, oauth_client
    ):
        credential_repo.seed(expires_in=timedelta(minutes=-5))
        oauth_client.refresh_error = RefreshError("revoked", provider_error="invalid_grant")

        with pytest.raises(RefreshError):
            await token_manager.get_valid_access_token(USER_ID, ServiceId.GOOGLE_CALENDAR)

        stored = await credential_repo.get(USER_ID, ServiceId.GOOGLE_CALENDAR)
        assert stored.access_token.get_secret_value() == "ya29.stored-access-token"
