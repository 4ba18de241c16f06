"""HTTP identity client for the service's own ``/api/v1/auth`` endpoints.

Holds the current API session (JWT access/refresh pair) for a long-running
client process and exchanges the refresh token for a new pair on demand.
The expiry is read from the access token's ``exp`` claim; the token is not
verified here, the server does that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog
from jose import JWTError, jwt

logger = structlog.get_logger(__name__)


class IdentityError(Exception):
    """The identity provider rejected a session operation."""


@dataclass
class Session:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: datetime


def session_from_tokens(access_token: str, refresh_token: str) -> Session:
    """Build a Session, deriving ``expires_at`` from the access token."""
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError as exc:
        raise IdentityError("invalid jwt: access token cannot be decoded") from exc
    exp = claims.get("exp")
    if exp is None:
        raise IdentityError("invalid jwt: access token has no exp claim")
    return Session(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.fromtimestamp(int(exp), tz=timezone.utc),
    )


class HttpIdentityClient:
    """Async client for ``/api/v1/auth/refresh``.

    Args:
        base_url: API root, e.g. ``https://crm.example.com``.
        session: Initial session (from login), if any.
    """

    TIMEOUT_READ = 10.0

    def __init__(self, base_url: str, session: Session | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session

    async def get_session(self) -> Session | None:
        return self._session

    def set_session(self, session: Session | None) -> None:
        self._session = session

    async def refresh_session(self) -> Session:
        """Exchange the refresh token for a new token pair.

        Raises:
            IdentityError: No session, or the server rejected the refresh.
            httpx.TransportError: The server could not be reached.
        """
        if self._session is None:
            raise IdentityError("no session")

        async with httpx.AsyncClient(timeout=self.TIMEOUT_READ) as client:
            response = await client.post(
                f"{self._base_url}/api/v1/auth/refresh",
                json={"refresh_token": self._session.refresh_token},
            )

        if response.status_code != 200:
            detail = None
            try:
                detail = response.json().get("detail")
            except ValueError:
                pass
            logger.warning("session.refresh_rejected", status_code=response.status_code)
            raise IdentityError(
                str(detail) if detail else f"session refresh failed ({response.status_code})"
            )

        data = response.json()
        self._session = session_from_tokens(data["access_token"], data["refresh_token"])
        return self._session
