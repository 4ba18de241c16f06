"""Signed OAuth ``state`` parameter.

The state round-trips through the provider's consent screen and is the only
thing that ties a callback to a user, so it is a short-lived HS256 JWT rather
than a bare user id.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt

from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import AttributionError

logger = structlog.get_logger(__name__)

STATE_TOKEN_TYPE = "oauth_state"
STATE_TTL = timedelta(minutes=10)


class OAuthStateSigner:
    """Issue and verify signed OAuth state values.

    Args:
        secret_key: HMAC key (JWT_SECRET_KEY).
        algorithm: JWT algorithm, HS256 by default.
        ttl: How long a consent round-trip may take.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl: timedelta = STATE_TTL,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._ttl = ttl

    def issue(self, user_id: str, service: ServiceId) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "svc": service.value,
            "nonce": secrets.token_urlsafe(16),
            "type": STATE_TOKEN_TYPE,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)

    def verify(self, state: str | None, service: ServiceId) -> str:
        """Return the user id carried by ``state``.

        Raises:
            AttributionError: If the state is missing, tampered with,
                expired, or was issued for another service.
        """
        if not state:
            raise AttributionError("OAuth state is missing")
        try:
            claims = jwt.decode(state, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.warning("oauth.state_invalid", service=service.value, error=str(exc))
            raise AttributionError("OAuth state is invalid or expired") from exc

        if claims.get("type") != STATE_TOKEN_TYPE or claims.get("svc") != service.value:
            logger.warning(
                "oauth.state_mismatch",
                service=service.value,
                state_service=claims.get("svc"),
            )
            raise AttributionError("OAuth state was not issued for this service")

        user_id = claims.get("sub")
        if not user_id:
            raise AttributionError("OAuth state carries no user")
        return user_id
