"""Pydantic schemas for credential records.

Tokens are held as ``SecretStr`` so that reprs, tracebacks and structured
log fields never show them. Use ``mask_token`` from ``encryption`` for the
diagnostic form.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, SecretStr


class ServiceId(str, Enum):
    """External integrations a user can connect."""

    GOOGLE_CALENDAR = "google_calendar"
    GMAIL = "gmail"


class WebhookChannel(BaseModel):
    """A live push-notification subscription on the provider side."""

    channel_id: str
    resource_id: str
    expires_at: datetime

    def hours_until_expiry(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() / 3600


class CredentialRecord(BaseModel):
    """One user's OAuth connection to one external service."""

    id: uuid.UUID
    user_id: str
    service_id: ServiceId
    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime
    scopes: str = ""
    is_active: bool = True
    webhook_channel_id: str | None = None
    webhook_resource_id: str | None = None
    webhook_expires_at: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def webhook(self) -> WebhookChannel | None:
        """The webhook triple, or None unless all three parts are present."""
        if (
            self.webhook_channel_id
            and self.webhook_resource_id
            and self.webhook_expires_at is not None
        ):
            return WebhookChannel(
                channel_id=self.webhook_channel_id,
                resource_id=self.webhook_resource_id,
                expires_at=self.webhook_expires_at,
            )
        return None

    @property
    def has_partial_webhook(self) -> bool:
        """True when some, but not all, webhook fields are set."""
        parts = (
            self.webhook_channel_id,
            self.webhook_resource_id,
            self.webhook_expires_at,
        )
        present = sum(p is not None for p in parts)
        return 0 < present < len(parts)

    def is_token_expired(
        self, now: datetime | None = None, skew_seconds: int = 0
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() <= skew_seconds


class CredentialStatus(BaseModel):
    """Connection status exposed to the front end."""

    is_connected: bool = Field(serialization_alias="isConnected")
    token_expiry: datetime | None = Field(default=None, serialization_alias="tokenExpiry")
    webhook_expiry: datetime | None = Field(default=None, serialization_alias="webhookExpiry")
