"""Per-service OAuth client configuration.

Calendar and Gmail share one Google OAuth client but use different
redirect URIs and the minimal scope set each feature needs.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.crm_connect.config import Settings
from src.crm_connect.integrations.credentials.schemas import ServiceId
from src.crm_connect.integrations.errors import ConfigurationError

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
]

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.send",
]

# Query-string prefix for the settings page redirect flags
REDIRECT_FLAG_PREFIX: dict[ServiceId, str] = {
    ServiceId.GOOGLE_CALENDAR: "google",
    ServiceId.GMAIL: "gmail",
}


@dataclass(frozen=True)
class ProviderConfig:
    """Everything the exchange client needs for one service."""

    service: ServiceId
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str]


def get_provider_config(settings: Settings, service: ServiceId) -> ProviderConfig:
    """Resolve the OAuth configuration for a service.

    Raises:
        ConfigurationError: If the client id, secret or redirect URI is unset.
    """
    if service == ServiceId.GOOGLE_CALENDAR:
        redirect_uri = settings.GOOGLE_CALENDAR_REDIRECT_URI
        scopes = CALENDAR_SCOPES
    else:
        redirect_uri = settings.GMAIL_REDIRECT_URI
        scopes = GMAIL_SCOPES

    missing = [
        name
        for name, value in (
            ("GOOGLE_CLIENT_ID", settings.GOOGLE_CLIENT_ID),
            ("GOOGLE_CLIENT_SECRET", settings.GOOGLE_CLIENT_SECRET),
            ("redirect URI", redirect_uri),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"OAuth not configured for {service.value}: missing {', '.join(missing)}"
        )

    return ProviderConfig(
        service=service,
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        redirect_uri=redirect_uri,
        scopes=list(scopes),
    )
